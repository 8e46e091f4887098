from __future__ import annotations

# python imports:
from abc import ABCMeta, abstractmethod
import logging
import re
from typing import (
	Callable, FrozenSet, Generator, Generic, Iterator, Optional as Opt,
	Sequence as Seq, Type, TypeVar,
)

# nntp_client imports:
from util import bytes_types, BYTES, b2s, s2b

logger = logging.getLogger ( __name__ )

_r_status_line = re.compile ( rb'^(\d\d\d) (.*)\r\n$' )


class Event ( Exception ):
	exc: Opt[BaseException] = None

	def go ( self ) -> Iterator[Event]:
		yield self

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}()'


class Closed ( Exception ):
	def __init__ ( self, reason: str = '' ) -> None:
		super().__init__ ( reason or '(none given)' )


class ProtocolError ( Exception ):
	pass


ResponseType = TypeVar ( 'ResponseType', bound = 'BaseResponse' )
class BaseResponse ( Exception, metaclass = ABCMeta ):
	@abstractmethod
	def is_success ( self ) -> bool:
		cls = self.__class__
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.is_success()' )


RequestProtocolGenerator = Generator[Event,None,None]


class BaseRequest ( metaclass = ABCMeta ):
	# a request object doubles as the description needed to replay it:
	# 1) client uses __init__() to capture the command's arguments
	# 2) _client_protocol() implements the client-side state machine,
	#    starting from the first step every time it is called
	base_response: Opt[BaseResponse] = None

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}()'

	@abstractmethod
	def _client_protocol ( self, client: ClientProtocol ) -> RequestProtocolGenerator:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._client_protocol()' )


class RequestT ( BaseRequest, Generic[ResponseType] ):
	responsecls: Type[ResponseType]

	@property
	def response ( self ) -> ResponseType:
		assert isinstance ( self.base_response, self.responsecls )
		return self.base_response
RequestType = RequestT[ResponseType]


class NeedDataEvent ( Event ):
	data: Opt[bytes] = None
	response: Opt[BaseResponse] = None

	def reset ( self ) -> NeedDataEvent:
		self.data = None
		self.response = None
		return self

	def go ( self ) -> Iterator[Event]:
		self.reset()
		yield from super().go()


class SendDataEvent ( Event ):

	def __init__ ( self, *chunks: bytes ) -> None:
		self.chunks: Seq[bytes] = chunks

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(chunks={self.chunks!r})'


class SendSecretEvent ( SendDataEvent ):
	# same as SendDataEvent but the payload never shows up in logs
	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(chunks=<redacted>)'


class Protocol ( metaclass = ABCMeta ):
	_buf: bytes = b''
	_scan: int = 0 # no CRLF in _buf starts before this offset
	request: Opt[BaseRequest] = None
	request_protocol: Opt[Generator[Event,None,None]] = None
	need_data: Opt[NeedDataEvent] = None
	_MAXLINE: int

	def receive ( self, data: BYTES ) -> Iterator[Event]:
		'''
		Feed one chunk of bytes from the transport.

		Complete CRLF-terminated lines are handed to _receive_line() in
		arrival order, the unterminated remainder is kept for the next chunk.
		An empty chunk means the peer closed the connection.
		'''
		log = logger.getChild ( 'Protocol.receive' )
		assert isinstance ( data, bytes_types ), f'invalid {data=}'
		if not data: # EOF indicator
			if self._buf:
				log.debug ( f'discarding partial line at EOF: {self._buf!r}' )
				self._buf = b''
			self._scan = 0
			raise Closed ( 'EOF' )
		self._buf += bytes ( data )
		yield from self.receive_buffered()

	def receive_buffered ( self ) -> Iterator[Event]:
		'''
		Hand over the complete lines already buffered. If handling a line
		raises, the lines behind it stay buffered until this is called again.
		'''
		start = 0
		scan, self._scan = self._scan, 0
		try:
			while ( end := self._buf.find ( b'\r\n', max ( start, scan ) ) ) >= 0:
				end += 2
				line = self._buf[start:end]
				start = end
				yield from self._receive_line ( line )
			# a trailing CR may still pair with an LF at the start of the next chunk
			self._scan = max ( len ( self._buf ) - start - 1, 0 )
		finally:
			if start:
				self._buf = self._buf[start:]
		if len ( self._buf ) >= self._MAXLINE:
			raise ProtocolError ( 'maximum line length exceeded' )

	@abstractmethod
	def _receive_line ( self, line: bytes ) -> Iterator[Event]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._receive_line()' )

	def _run_protocol ( self ) -> Iterator[Event]:
		log = logger.getChild ( 'Protocol._run_protocol' )
		assert self.request is not None, f'invalid {self.request=}'
		assert self.request_protocol is not None, f'invalid {self.request_protocol=}'
		try:
			while True:
				event = next ( self.request_protocol )
				log.debug ( f'{event=}' )
				if isinstance ( event, NeedDataEvent ):
					if self.request.base_response is not None:
						log.warning ( f'INTERNAL ERROR - {self.request!r} pushed NeedDataEvent but has a response set - this can cause upstack deadlock ({self.request.base_response!r})' )
						self.request.base_response = None
					self.need_data = event.reset()
					return
				else:
					yield event
					if self.request_protocol is None:
						raise Closed ( 'request was cancelled' )
					if event.exc is not None:
						self.request_protocol.throw ( event.exc )
		except Closed:
			self.request = None
			self.request_protocol = None
			raise
		except BaseResponse as response:
			request, self.request = self.request, None
			self.request_protocol = None
			if not response.is_success():
				raise
			assert isinstance ( request, BaseRequest )
			request.base_response = response
		except StopIteration:
			# client protocol *must* raise its response
			# if not, the driver will get stuck waiting for data that never arrives
			request, self.request = self.request, None
			self.request_protocol = None
			log.warning (
				f'INTERNAL ERROR:'
				f' {type(request).__module__}.{type(request).__name__}'
				f'._client_protocol() exit w/o response - this can cause upstack deadlock'
			)
			raise Closed ( 'INTERNAL ERROR - CLIENT PROTOCOLS MUST THROW THEIR RESPONSE' )
		except Exception as e:
			self.request = None
			self.request_protocol = None
			log.exception ( 'internal protocol error:' )
			raise Closed ( repr ( e ) ) from e


class ClientProtocol ( Protocol ):
	notices: FrozenSet[bytes] = frozenset() # status codes the server may send unprompted

	def send ( self, request: BaseRequest ) -> Iterator[Event]:
		assert self.request is None, f'trying to send {request=} but not finished processing {self.request=}'
		request.base_response = None
		self.request = request
		self.request_protocol = request._client_protocol ( self )
		yield from self._run_protocol()

	@property
	def pending ( self ) -> bool:
		return self.request is not None

	def cancel ( self ) -> None:
		'''
		Forget the pending request. A response arriving for it later is
		treated as unexpected.
		'''
		request_protocol, self.request_protocol = self.request_protocol, None
		self.request = None
		self.need_data = None
		if request_protocol is not None:
			request_protocol.close()

	def reset ( self ) -> None:
		# new physical connection, nothing from the old one carries over
		self.cancel()
		self._buf = b''
		self._scan = 0

	def _receive_line ( self, line: BYTES ) -> Iterator[Event]:
		log = logger.getChild ( 'ClientProtocol._receive_line' )
		m = _r_status_line.match ( line )
		if m and m.group ( 1 ) in self.notices:
			log.debug ( f'ignoring notice: {b2s(line).rstrip()}' )
			return
		if self.need_data is None:
			log.warning ( f'unexpected response received: {b2s(line).rstrip()}' )
			return
		self.need_data.data = bytes ( line )
		self.need_data = None
		yield from self._run_protocol()

#region client protocol helpers

class ClientUtil:
	def __init__ ( self,
		parser: Callable[[BYTES],BaseResponse],
	) -> None:
		self.parser = parser

	def send ( self, line: str ) -> Iterator[Event]:
		assert line.endswith ( '\r\n' ), f'invalid {line=}'
		yield from SendDataEvent ( s2b ( line ) ).go()

	def recv ( self, event: Opt[NeedDataEvent] = None ) -> Iterator[Event]:
		# the parsed response is left in event.response for the caller to examine
		if event is None:
			event = NeedDataEvent()
		yield from event.go()
		event.response = self.parser ( event.data or b'' )

	def send_recv ( self, line: str, event: NeedDataEvent ) -> Iterator[Event]:
		yield from self.send ( line )
		yield from self.recv ( event )

#endregion client protocol helpers
