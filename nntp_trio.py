from __future__ import annotations

# python imports:
from contextlib import asynccontextmanager
import ssl
import trio # pip install trio
from typing import AsyncIterator, Optional as Opt, Type

# nntp_client imports:
from config import Config
import nntp_async
from transport_trio import TrioTransport as Transport

class Client ( nntp_async.Client ):
	ssl_context: Opt[ssl.SSLContext] = None # None means the system default trust store

	@classmethod
	@asynccontextmanager
	async def open ( cls: Type[Client],
		config: Config,
		ssl_context: Opt[ssl.SSLContext] = None,
	) -> AsyncIterator[Client]:
		'''
		Connect and yield a ready client. The connection's background tasks
		live in a nursery that closes when the block exits, after end().
		'''
		async with trio.open_nursery() as nursery:
			self = cls ( nursery, config )
			self.ssl_context = ssl_context
			try:
				await self.connect()
				yield self
			finally:
				with trio.move_on_after ( config.conn_timeout ) as scope:
					scope.shield = True
					await self.end()

	async def _open_transport ( self ) -> Transport:
		return await Transport.connect (
			self.config.host,
			self.config.effective_port,
			self.config.secure,
			self.ssl_context,
		)
