#region PROLOGUE --------------------------------------------------------------
from __future__ import annotations

# python imports:
from abc import abstractmethod
import datetime
import logging
import re
from typing import NamedTuple, Optional as Opt, Union

# nntp_client imports:
from base_proto import (
	BaseResponse, ResponseType, RequestT, NeedDataEvent,
	SendDataEvent, SendSecretEvent, Closed, RequestProtocolGenerator,
	ClientProtocol, ClientUtil,
)
from util import bytes_types, BYTES, b2s, s2b, has_eol

logger = logging.getLogger ( __name__ )


_r_response = re.compile ( rb'^(\d\d\d) (.*)\r\n$' )
_r_date = re.compile ( r'^(\d{4})(\d\d)(\d\d)(\d\d)(\d\d)(\d\d)$' )
_r_stat = re.compile ( r'^(\d+) <(.*?)>' )
_r_posted = re.compile ( r'^<(.*?)>' )

END_OF_BODY = b'\r\n.\r\n'


#endregion
#region RESPONSES -------------------------------------------------------------

class Response ( BaseResponse ):
	command: str = ''

	def __init__ ( self, code: int, message: str, command: str = '' ) -> None:
		self.code = code
		self.message = message
		if command:
			self.command = command
		super().__init__ ( code, message )

	@staticmethod
	def parse ( line: BYTES ) -> Response:
		#log = logger.getChild ( 'Response.parse' )
		assert isinstance ( line, bytes_types ), f'invalid {line=}'
		m = _r_response.match ( line )
		if not m:
			raise MalformedResponse ( 0, f'Unexpected line format: {b2s(line).rstrip()}' )
		code, text = m.groups()
		return Response ( int ( code ), b2s ( text ).strip() )

	def is_success ( self ) -> bool:
		return self.code < 400

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}({self.code!r}, {self.message!r})'


class SuccessResponse ( Response ):
	def is_success ( self ) -> bool:
		return True


class ErrorResponse ( Response ):
	def is_success ( self ) -> bool:
		return False

	def __str__ ( self ) -> str:
		return f'{self.command or "request"} failed (code: {self.code}): {self.message}'


class UnexpectedResponse ( ErrorResponse ):
	def __str__ ( self ) -> str:
		return f'Unexpected response to {self.command} (code: {self.code}): {self.message}'


class MalformedResponse ( ErrorResponse ):
	pass


class NoSuchGroup ( ErrorResponse ):
	pass


class NoGroupSelected ( ErrorResponse ):
	pass


class InvalidDate ( ErrorResponse ):
	pass


class PostingNotAllowed ( ErrorResponse ):
	pass


class PostRejected ( ErrorResponse ):
	pass


class GreetingResponse ( SuccessResponse ):
	@property
	def can_post ( self ) -> bool:
		return self.code == 200


class GroupResponse ( SuccessResponse ):
	# 211 count first last name
	count: int = 0
	first: int = 0
	last: int = 0
	name: str = ''

	def __init__ ( self, code: int, message: str, command: str = '' ) -> None:
		super().__init__ ( code, message, command )
		fields = message.split()
		nums = [ int ( field ) if field.isdigit() else 0 for field in fields[:3] ]
		nums += [ 0 ] * ( 3 - len ( nums ) )
		self.count, self.first, self.last = nums
		if len ( fields ) > 3:
			self.name = fields[3]


class DateResponse ( SuccessResponse ):
	date: datetime.datetime


class Article ( NamedTuple ):
	number: int
	message_id: str


class StatResponse ( SuccessResponse ):
	article: Opt[Article] = None # None when the server doesn't have it


class PostResponse ( SuccessResponse ):
	message_id: str


client_util = ClientUtil ( Response.parse )

def _response ( event: NeedDataEvent ) -> Response:
	assert isinstance ( event.response, Response ), f'invalid {event.response=}'
	return event.response

def expect ( response: Response, code: int, command: str ) -> None:
	if response.code != code:
		raise UnexpectedResponse ( response.code, response.message, command )


#endregion
#region REQUESTS --------------------------------------------------------------

class Request ( RequestT[ResponseType] ):
	command: str

	def _client_protocol ( self, client: ClientProtocol ) -> RequestProtocolGenerator:
		assert isinstance ( client, Client )
		try:
			yield from self.client_protocol ( client )
		except ErrorResponse as e:
			if not e.command:
				e.command = self.command
			raise

	@abstractmethod
	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		cls = self.__class__
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.client_protocol()' )


class GreetingRequest ( Request[GreetingResponse] ):
	responsecls = GreetingResponse
	command = 'connect'

	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		log = logger.getChild ( 'GreetingRequest.client_protocol' )
		event = NeedDataEvent()
		yield from client_util.recv ( event ) # nothing to send, the server speaks first
		response = _response ( event )
		if response.code not in ( 200, 201 ):
			raise UnexpectedResponse ( response.code, response.message, self.command )
		client.can_post = ( response.code == 200 )
		if not client.can_post:
			log.debug ( "NNTP server won't accept posts" )
		raise GreetingResponse ( response.code, response.message )


class AuthInfoRequest ( Request[SuccessResponse] ): # RFC4643
	responsecls = SuccessResponse
	command = 'AUTHINFO'

	def __init__ ( self, username: str, password: str ) -> None:
		assert isinstance ( username, str ) and username and not has_eol ( username ), f'invalid {username=}'
		assert isinstance ( password, str ) and not has_eol ( password ), 'invalid password'
		self.username = username
		self.password = password

	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		event = NeedDataEvent()
		yield from client_util.send_recv ( f'AUTHINFO USER {self.username}\r\n', event )
		expect ( _response ( event ), 381, 'AUTHINFO USER' )
		yield from SendSecretEvent ( s2b ( f'AUTHINFO PASS {self.password}\r\n' ) ).go()
		yield from client_util.recv ( event )
		response = _response ( event )
		expect ( response, 281, 'AUTHINFO PASS' )
		raise SuccessResponse ( response.code, response.message )

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(username={self.username!r})'


class GroupRequest ( Request[GroupResponse] ):
	responsecls = GroupResponse
	command = 'GROUP'

	def __init__ ( self, group: str ) -> None:
		# the group name is sent verbatim, so it cannot contain line terminators
		assert isinstance ( group, str ) and group and not has_eol ( group ), f'invalid {group=}'
		self.group = group

	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		event = NeedDataEvent()
		yield from client_util.send_recv ( f'GROUP {self.group}\r\n', event )
		response = _response ( event )
		if response.code == 411:
			raise NoSuchGroup ( response.code, response.message )
		expect ( response, 211, self.command )
		client.current_group = self.group
		raise GroupResponse ( response.code, response.message )

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}({self.group!r})'


class DateRequest ( Request[DateResponse] ):
	responsecls = DateResponse
	command = 'DATE'

	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		event = NeedDataEvent()
		yield from client_util.send_recv ( 'DATE\r\n', event )
		response = _response ( event )
		expect ( response, 111, self.command )
		m = _r_date.match ( response.message )
		if not m:
			raise InvalidDate ( response.code, f'Invalid date returned: {response.message}' )
		try:
			date = datetime.datetime ( *map ( int, m.groups() ), tzinfo = datetime.timezone.utc )
		except ValueError as e:
			raise InvalidDate ( response.code, f'Invalid date returned: {response.message} ({e})' ) from e
		r = DateResponse ( response.code, response.message )
		r.date = date
		raise r


class StatRequest ( Request[StatResponse] ):
	responsecls = StatResponse
	command = 'STAT'

	def __init__ ( self, id: Union[int,str] ) -> None:
		if isinstance ( id, int ):
			self.arg = str ( id )
		else:
			assert isinstance ( id, str ) and id and not has_eol ( id ), f'invalid {id=}'
			self.arg = f'<{id}>' # message-id form
		self.id = id

	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		event = NeedDataEvent()
		yield from client_util.send_recv ( f'STAT {self.arg}\r\n', event )
		response = _response ( event )
		if response.code in ( 423, 430 ): # no such article
			raise StatResponse ( response.code, response.message )
		if response.code == 412:
			raise NoGroupSelected ( response.code, response.message )
		expect ( response, 223, self.command )
		m = _r_stat.match ( response.message )
		if not m:
			raise MalformedResponse ( response.code, f'Unexpected response for stat request: {response.message}' )
		r = StatResponse ( response.code, response.message )
		r.article = Article ( int ( m.group ( 1 ) ), m.group ( 2 ) )
		raise r

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}({self.id!r})'


class PostRequest ( Request[PostResponse] ):
	responsecls = PostResponse
	command = 'POST'

	def __init__ ( self, message: bytes, retries: int ) -> None:
		assert isinstance ( message, bytes_types ), f'invalid {type(message)=}'
		assert bytes ( message ).endswith ( END_OF_BODY ), 'message must end with CRLF.CRLF'
		assert retries >= 0, f'invalid {retries=}'
		self.message = bytes ( message )
		self.retries = retries

	def client_protocol ( self, client: Client ) -> RequestProtocolGenerator:
		log = logger.getChild ( 'PostRequest.client_protocol' )
		if not client.can_post:
			raise PostingNotAllowed ( 201, 'Server has indicated that posting is not allowed' )
		retries = self.retries
		event = NeedDataEvent()
		while True:
			yield from client_util.send_recv ( 'POST\r\n', event )
			expect ( _response ( event ), 340, self.command )
			yield from SendDataEvent ( self.message ).go()
			yield from client_util.recv ( event )
			response = _response ( event )
			if response.code == 441:
				if retries > 0:
					retries -= 1
					log.info ( f'server rejected post ({response.message}), retrying ({retries} retries left)' )
					continue
				raise PostRejected ( response.code, f'Server could not accept post, returned: {response.code} {response.message}' )
			expect ( response, 240, 'posted article' )
			m = _r_posted.match ( response.message )
			if not m:
				raise MalformedResponse ( response.code, f'Unexpected response for posted article: {response.message}' )
			r = PostResponse ( response.code, response.message )
			r.message_id = m.group ( 1 )
			raise r

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}({len(self.message)} bytes)'


#endregion
#region CLIENT ----------------------------------------------------------------

class Client ( ClientProtocol ):
	_MAXLINE = 16384 # no single response line should come close to this
	notices = frozenset ( ( b'400', b'205' ) ) # idle timeout, connection closing
	can_post: Opt[bool] = None
	current_group: Opt[str] = None # survives reset() so it can be restored after a reconnect

#endregion
