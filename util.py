import re
from typing import Union

BYTES = Union[bytes,bytearray,memoryview]
bytes_types = ( bytes, bytearray, memoryview )

ENCODING = 'utf-8'

_r_eol = re.compile ( r'[\r\n]' )

def b2s ( b: BYTES, encoding: str = ENCODING, errors: str = 'replace' ) -> str:
	return bytes ( b ).decode ( encoding, errors )

def s2b ( s: str, encoding: str = ENCODING, errors: str = 'strict' ) -> bytes:
	return s.encode ( encoding, errors )

def has_eol ( s: str ) -> bool:
	return _r_eol.search ( s ) is not None
