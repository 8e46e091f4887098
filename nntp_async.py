# python imports:
import logging
from typing import Optional as Opt, Union

# nntp_client imports:
from event_handling import AsyncClient, State
import nntp_proto as proto

logger = logging.getLogger ( __name__ )


class Client ( AsyncClient ):
	protocls = proto.Client

	@property
	def can_post ( self ) -> Opt[bool]:
		assert isinstance ( self.proto, proto.Client )
		return self.proto.can_post

	@property
	def current_group ( self ) -> Opt[str]:
		assert isinstance ( self.proto, proto.Client )
		return self.proto.current_group

	async def _handshake ( self ) -> None:
		log = logger.getChild ( 'Client._handshake' )
		assert isinstance ( self.proto, proto.Client )
		greeting = await self._run_request ( proto.GreetingRequest(), None )
		log.debug ( f'{greeting=}' )
		if self.config.username is not None:
			self._set_state ( State.AUTHENTICATING )
			await self._run_request ( proto.AuthInfoRequest (
				self.config.username, self.config.password or '',
			), None )
			log.debug ( 'NNTP connection authenticated' )
		if self.proto.current_group:
			# group previously selected - re-select it
			group = self.proto.current_group
			try:
				await self._run_request ( proto.GroupRequest ( group ), None )
			except proto.NoSuchGroup:
				log.warning ( f'previously selected group {group!r} no longer exists' )
				self.proto.current_group = None
				raise

	async def _goodbye ( self ) -> None:
		await self._write ( b'QUIT\r\n' )

	async def date ( self ) -> proto.DateResponse:
		return await self._request ( proto.DateRequest() )

	async def group ( self, name: str ) -> proto.GroupResponse:
		return await self._request ( proto.GroupRequest ( name ) )

	async def stat ( self, id: Union[int,str] ) -> proto.StatResponse:
		return await self._request ( proto.StatRequest ( id ) )

	async def post ( self, message: bytes ) -> proto.PostResponse:
		'''
		message must already end with CRLF.CRLF. If the connection drops
		mid-post the whole POST sequence is sent again after reconnecting,
		so the server may see the article more than once.
		'''
		return await self._request ( proto.PostRequest ( message, self.config.post_retries ) )
