from __future__ import annotations

# python imports:
from abc import ABCMeta, abstractmethod
import contextlib
import enum
import logging
import math
import trio # pip install trio
from typing import Iterator, Optional as Opt, Type

# nntp_client imports:
from base_proto import (
	BaseRequest, BaseResponse, RequestType, ResponseType, Event, SendDataEvent,
	SendSecretEvent, ClientProtocol, Closed, ProtocolError,
)
from config import Config
from transport import AsyncTransport
from util import BYTES, b2s

logger = logging.getLogger ( __name__ )


class State ( enum.Enum ):
	INACTIVE = 'inactive'
	CONNECTING = 'connecting'
	AUTHENTICATING = 'authenticating'
	CONNECTED = 'connected'
	CLOSING = 'closing'
	DISCONNECTED = 'disconnected'


class ConnectTimeout ( TimeoutError ):
	pass


class RequestTimeout ( TimeoutError ):
	pass


@contextlib.contextmanager
def _event_exception_safety ( event: Event ) -> Iterator[None]:
	try:
		yield
	except Exception as e:
		event.exc = e


@contextlib.contextmanager
def close_if_oserror() -> Iterator[None]:
	try:
		yield
	except ( OSError, trio.BrokenResourceError, trio.ClosedResourceError ) as e:
		raise Closed ( repr ( e ) ) from e


class AsyncEventHandler:
	transport: Opt[AsyncTransport] = None

	async def _write ( self, data: BYTES ) -> None:
		if self.transport is None:
			raise Closed ( 'not connected' )
		with close_if_oserror():
			await self.transport.write ( data )

	async def on_SendDataEvent ( self, event: SendDataEvent ) -> None:
		log = logger.getChild ( 'AsyncEventHandler.on_SendDataEvent' )
		for chunk in event.chunks:
			log.debug ( f'C>{b2s(chunk).rstrip()}' )
			await self._write ( chunk )

	async def on_SendSecretEvent ( self, event: SendSecretEvent ) -> None:
		log = logger.getChild ( 'AsyncEventHandler.on_SendSecretEvent' )
		for chunk in event.chunks:
			log.debug ( 'C><redacted>' )
			await self._write ( chunk )

	async def _on_event ( self, event: Event ) -> None:
		with _event_exception_safety ( event ):
			func = getattr ( self, f'on_{type(event).__name__}' )
			await func ( event )


class _Waiter:
	# completion slot for the one request on the wire
	error: Opt[BaseException] = None

	def __init__ ( self, request: BaseRequest ) -> None:
		self.request = request
		self.done = trio.Event()


class AsyncClient ( AsyncEventHandler, metaclass = ABCMeta ):
	'''
	Owns one connection at a time and keeps it alive.

	A reader task runs for each connection inside the nursery given to the
	constructor, so everything the server sends is framed and matched as it
	arrives, whether a request is outstanding or not. A close noticed by the
	reader starts a reconnect at once.

	Only one request is ever on the wire: _request() serializes callers,
	waits until the handshake has completed and, if the connection drops
	while a request is outstanding, reconnects and runs the whole request
	again from its first step. The caller sees exactly one result or error.
	'''
	protocls: Type[ClientProtocol]
	proto: ClientProtocol
	state: State = State.INACTIVE
	_finished: bool = False # set by end()/destroy(), stops automatic reconnection
	_was_connected: bool = False # a handshake has succeeded since the last connect()
	_replay: Opt[BaseRequest] = None # interrupted request, run again once reconnected
	_reconnect_scope: Opt[trio.CancelScope] = None
	_reconnecting: bool = False
	_waiter: Opt[_Waiter] = None
	_reading: Opt[AsyncTransport] = None

	def __init__ ( self, nursery: trio.Nursery, config: Config ) -> None:
		assert isinstance ( config, Config ), f'invalid {config=}'
		assert config.username is None or config.password is not None, 'password required when username is given'
		assert config.connect_retries >= 0 and config.post_retries >= 0, f'invalid {config=}'
		self.nursery = nursery
		self.config = config
		self.proto = self.protocls()
		self._connect_retries = config.connect_retries
		self._request_lock = trio.Lock()
		self._connect_lock = trio.Lock()
		self._proto_lock = trio.Lock()
		self._state_changed = trio.Event()

	@abstractmethod
	async def _open_transport ( self ) -> AsyncTransport:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._open_transport()' )

	@abstractmethod
	async def _handshake ( self ) -> None:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._handshake()' )

	async def _goodbye ( self ) -> None:
		# override this to send a courtesy command before end() closes the connection
		pass

	@property
	def connected ( self ) -> bool:
		return self.state is State.CONNECTED

	def _set_state ( self, state: State ) -> None:
		log = logger.getChild ( 'AsyncClient._set_state' )
		if state is not self.state:
			log.debug ( f'{self.state.value} -> {state.value}' )
			self.state = state
		# wake everyone waiting in _wait_ready() so they can re-examine things
		changed, self._state_changed = self._state_changed, trio.Event()
		changed.set()

	def _cancel_reconnect ( self ) -> None:
		if self._reconnect_scope is not None:
			self._reconnect_scope.cancel()

	#region connection lifecycle

	async def connect ( self ) -> None:
		'''
		Connect and complete the handshake.

		Timeouts and transport failures are retried config.connect_retries
		times, config.reconnect_delay seconds apart. Once those are used up
		the last error (ConnectTimeout for a timeout) is raised and the client
		stays disconnected until connect() is called again. Protocol errors
		from the handshake are raised immediately.
		'''
		log = logger.getChild ( 'AsyncClient.connect' )
		self._cancel_reconnect()
		async with self._connect_lock:
			self._finished = False
			self._was_connected = False
			self._connect_retries = self.config.connect_retries
			if not await self._establish ( bounded = True ):
				raise Closed ( 'connection attempt cancelled' )
			self._was_connected = True
			self._connect_retries = self.config.connect_retries
			log.info ( f'NNTP connection to {self.config.url} ready' )

	def _start_reconnect ( self ) -> None:
		if self._reconnecting or self._finished or not self._was_connected:
			return
		self._reconnecting = True
		self.nursery.start_soon ( self._reconnect )

	async def _reconnect ( self ) -> None:
		log = logger.getChild ( 'AsyncClient._reconnect' )
		try:
			async with self._connect_lock:
				if self.state is State.CONNECTED or self._finished or not self._was_connected:
					return
				log.warning ( f'reconnecting to {self.config.url}...' )
				if await self._establish ( bounded = False ):
					log.info ( f'NNTP connection to {self.config.url} re-established' )
		finally:
			self._reconnecting = False

	async def _establish ( self, bounded: bool ) -> bool:
		# returns False if end(), destroy() or connect() interrupted us
		log = logger.getChild ( 'AsyncClient._establish' )
		with trio.CancelScope() as scope:
			self._reconnect_scope = scope
			try:
				while True:
					try:
						await self._connect_once()
						return True
					except BaseResponse as e:
						# a rejected handshake only goes to the caller of connect()
						if bounded:
							raise
						log.warning ( f'NNTP handshake failed ({e}), reconnecting after {self.config.reconnect_delay} second(s)...' )
					except ( Closed, ConnectTimeout ) as e:
						if bounded:
							if self._connect_retries <= 0:
								log.warning ( f'giving up on {self.config.url}: {e}' )
								raise
							self._connect_retries -= 1
						log.warning ( f'NNTP connection failed ({e}), reconnecting after {self.config.reconnect_delay} second(s)...' )
					await trio.sleep ( self.config.reconnect_delay )
			finally:
				if self._reconnect_scope is scope:
					self._reconnect_scope = None
		return False

	async def _connect_once ( self ) -> None:
		log = logger.getChild ( 'AsyncClient._connect_once' )
		await self._teardown ( 'replaced by a new connection' )
		self._set_state ( State.CONNECTING )
		log.debug ( f'Connecting to {self.config.url}...' )
		try:
			with trio.move_on_after ( self.config.conn_timeout ) as scope:
				with close_if_oserror():
					self.transport = await self._open_transport()
				log.debug ( 'NNTP connection established' )
				await self._handshake()
				# the reader may have seen the close right behind the last handshake response
				if self.transport is None:
					raise Closed ( 'connection lost during handshake' )
			if scope.cancelled_caught:
				raise ConnectTimeout ( f'NNTP connection timeout after {self.config.conn_timeout} second(s)' )
		except BaseException:
			# leave nothing of the failed attempt behind
			await self._teardown ( 'connection attempt failed' )
			self._set_state ( State.DISCONNECTED )
			raise
		self._set_state ( State.CONNECTED )
		log.debug ( 'NNTP connection ready' )

	async def _teardown ( self, reason: str ) -> None:
		log = logger.getChild ( 'AsyncClient._teardown' )
		transport, self.transport = self.transport, None
		self.proto.reset()
		self._complete ( Closed ( reason ) )
		if transport is not None:
			log.debug ( f'closing transport: {reason}' )
			with trio.CancelScope ( shield = True ):
				await transport.close()

	async def _lost ( self, transport: Opt[AsyncTransport], reason: str ) -> None:
		# a concurrent connect() may have replaced the transport already
		if transport is None or self.transport is not transport:
			return
		self._set_state ( State.DISCONNECTED )
		await self._teardown ( reason )
		self._start_reconnect()

	async def end ( self ) -> None:
		'''
		Say goodbye and close the connection. No reconnection happens after
		this until connect() is called again.
		'''
		log = logger.getChild ( 'AsyncClient.end' )
		if self._finished:
			return
		self._finished = True
		self._cancel_reconnect()
		self._set_state ( State.CLOSING )
		try:
			await self._goodbye()
		except ( Closed, trio.BusyResourceError ) as e:
			log.debug ( f'unable to say goodbye: {e!r}' )
		await self._teardown ( 'connection has been ended' )
		self._set_state ( State.DISCONNECTED )

	async def destroy ( self ) -> None:
		'''
		Drop the connection immediately. Outstanding and queued requests fail
		with Closed.
		'''
		self._finished = True
		self._cancel_reconnect()
		await self._teardown ( 'connection has been destroyed' )
		self._set_state ( State.DISCONNECTED )

	#endregion connection lifecycle
	#region reading

	def _start_reader ( self, transport: AsyncTransport ) -> None:
		# one reader per connection, started once the first request is registered
		if self._reading is not transport:
			self._reading = transport
			self.nursery.start_soon ( self._reader, transport )

	async def _reader ( self, transport: AsyncTransport ) -> None:
		log = logger.getChild ( 'AsyncClient._reader' )
		try:
			while self.transport is transport:
				with close_if_oserror():
					data = await transport.read()
				async with self._proto_lock:
					if self.transport is not transport:
						break
					log.debug ( f'S>{b2s(data).rstrip()}' )
					await self._feed ( self.proto.receive ( data ) )
		except ( Closed, ProtocolError ) as e:
			if self.transport is transport:
				if self._finished:
					log.debug ( f'NNTP connection closed: {e}' )
				else:
					log.warning ( f'NNTP connection lost: {e}' )
				await self._lost ( transport, str ( e ) )
		finally:
			if self._reading is transport:
				self._reading = None

	async def _feed ( self, events: Iterator[Event] ) -> None:
		# caller holds _proto_lock
		while True:
			try:
				for event in events:
					await self._on_event ( event )
				break
			except BaseResponse as e:
				self._complete ( e )
				# lines that arrived behind the error response
				events = self.proto.receive_buffered()
		self._complete()

	def _complete ( self, error: Opt[BaseException] = None ) -> None:
		waiter = self._waiter
		if waiter is None or waiter.done.is_set():
			return
		if error is None and waiter.request.base_response is None:
			return
		waiter.error = error
		waiter.done.set()

	#endregion reading
	#region requests

	async def _wait_ready ( self ) -> None:
		while self.state is not State.CONNECTED:
			if self._finished:
				raise Closed ( 'connection has been ended' )
			if self.state is State.DISCONNECTED:
				# held until somebody calls connect() if we never got connected
				self._start_reconnect()
			await self._state_changed.wait()

	async def _run_request ( self, request: RequestType[ResponseType], timeout: Opt[float] ) -> ResponseType:
		'''
		Send one request on the current connection and wait for the reader
		to complete it. No locking and no readiness check, the handshake
		uses this directly.
		'''
		transport = self.transport
		if transport is None:
			raise Closed ( 'not connected' )
		waiter = _Waiter ( request )
		try:
			with trio.move_on_after ( math.inf if timeout is None else timeout ) as scope:
				async with self._proto_lock:
					if self.transport is not transport:
						raise Closed ( 'connection was replaced' )
					self._waiter = waiter
					try:
						await self._feed ( self.proto.send ( request ) )
					except Closed:
						self.proto.cancel()
						raise
				self._start_reader ( transport )
				await waiter.done.wait()
			if scope.cancelled_caught:
				self.proto.cancel()
				raise RequestTimeout ( f'Response to {request!r} timed out after {timeout} second(s)' )
		finally:
			if self._waiter is waiter:
				self._waiter = None
		if waiter.error is not None:
			raise waiter.error
		return request.response

	async def _request ( self, request: RequestType[ResponseType] ) -> ResponseType:
		log = logger.getChild ( 'AsyncClient._request' )
		async with self._request_lock:
			try:
				while True:
					await self._wait_ready()
					if self._replay is not None:
						request, self._replay = self._replay, None
						log.info ( f'replaying {request!r} after reconnect' )
					transport = self.transport
					try:
						return await self._run_request ( request, self.config.timeout )
					except Closed as e:
						if self._finished:
							raise
						log.warning ( f'NNTP connection lost during {request!r}: {e}' )
						self._replay = request
						await self._lost ( transport, str ( e ) )
					except RequestTimeout as e:
						# the server may still answer, so this connection can't be trusted anymore
						log.warning ( str ( e ) )
						await self._lost ( transport, str ( e ) )
						raise
					except trio.Cancelled:
						# abandoned mid-exchange, a late answer would be taken for the next request's
						with trio.CancelScope ( shield = True ):
							await self._lost ( transport, 'request was cancelled' )
						raise
			finally:
				self._replay = None

	#endregion requests
