from __future__ import annotations

# python imports:
import logging
import ssl
import trio # pip install trio
from typing import Optional as Opt, Type

# nntp_client imports:
from transport import AsyncTransport
from util import BYTES

logger = logging.getLogger ( __name__ )


class TrioTransport ( AsyncTransport ):
	happy_eyeballs_delay: float = 0.25 # this is the same as trio's default circa version 0.16.0
	close_timeout: float = 0.05
	stream: trio.abc.Stream

	def __init__ ( self, stream: trio.abc.Stream, ssl_context: Opt[ssl.SSLContext] = None ) -> None:
		self.stream = stream
		if ssl_context is not None:
			self.ssl_context = ssl_context

	@classmethod
	async def connect ( cls: Type[TrioTransport],
		hostname: str,
		port: int,
		tls: bool,
		ssl_context: Opt[ssl.SSLContext] = None,
	) -> TrioTransport:
		log = logger.getChild ( 'TrioTransport.connect' )
		log.debug ( f'connecting to {hostname}:{port} ({tls=})' )
		stream = await trio.open_tcp_stream ( hostname, port,
			happy_eyeballs_delay = cls.happy_eyeballs_delay,
		)
		self = cls ( stream, ssl_context )
		if tls:
			await self.wrap_tls ( hostname )
		return self

	async def wrap_tls ( self, server_hostname: str ) -> None:
		context = self.ssl_context_or_default_client()

		stream = trio.SSLStream (
			self.stream,
			ssl_context = context,
			server_hostname = server_hostname,
		)
		await stream.do_handshake()
		self.stream = stream

	async def read ( self ) -> bytes:
		#log = logger.getChild ( 'TrioTransport.read' )
		return bytes ( await self.stream.receive_some() )

	async def write ( self, data: BYTES ) -> None:
		#log = logger.getChild ( 'TrioTransport.write' )
		await self.stream.send_all ( data )

	async def close ( self ) -> None:
		log = logger.getChild ( 'TrioTransport.close' )
		with trio.move_on_after ( self.close_timeout ):
			try:
				await self.stream.aclose()
			except ( trio.BrokenResourceError, trio.ClosedResourceError ) as e:
				log.debug ( f'stream already unusable while closing: {e!r}' )
