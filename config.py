# python imports:
from typing import NamedTuple, Optional as Opt

NNTP_PORT = 119
NNTPS_PORT = 563


class Config ( NamedTuple ):
	'''
	Connection settings for one client instance.

	timeouts and delays are in seconds, retry counts are the number of
	extra attempts after the first one fails.
	'''
	host: str
	port: Opt[int] = None # None picks 119 or 563 depending on secure
	secure: bool = False
	username: Opt[str] = None # no AUTHINFO exchange when None
	password: Opt[str] = None
	conn_timeout: float = 30.0
	timeout: float = 60.0
	connect_retries: int = 1
	reconnect_delay: float = 15.0
	post_retries: int = 1

	@property
	def effective_port ( self ) -> int:
		if self.port:
			return self.port
		return NNTPS_PORT if self.secure else NNTP_PORT

	@property
	def url ( self ) -> str:
		scheme = 'nntps' if self.secure else 'nntp'
		return f'{scheme}://{self.host}:{self.effective_port}'
