# python imports:
from abc import ABCMeta, abstractmethod
import logging
import ssl
from typing import Optional as Opt

# nntp_client imports:
from util import BYTES

logger = logging.getLogger ( __name__ )


class AsyncTransport ( metaclass = ABCMeta ):
	'''
	The byte stream the client talks over.

	read() returns whatever bytes are available (b'' at EOF), write() sends
	all of data, close() releases the connection. Implementations may raise
	OSError or trio's resource errors, the client maps those to Closed.
	'''
	ssl_context: Opt[ssl.SSLContext] = None

	def ssl_context_or_default_client ( self ) -> ssl.SSLContext:
		if self.ssl_context is None:
			self.ssl_context = ssl.create_default_context ( ssl.Purpose.SERVER_AUTH )
		return self.ssl_context

	@abstractmethod
	async def read ( self ) -> bytes:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.read()' )

	@abstractmethod
	async def write ( self, data: BYTES ) -> None:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.write()' )

	@abstractmethod
	async def close ( self ) -> None:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.close()' )
