# python imports:
import logging
from pathlib import Path
import sys
import trio # pip install trio
import unittest

if __name__ == '__main__': # pragma: no cover
	sys.path.append ( str ( Path ( __file__ ).parent.parent.absolute() ) )

# nntp_client imports:
from config import Config
import event_handling

logger = logging.getLogger ( __name__ )

class Tests ( unittest.TestCase ):
	def test_coverage ( self ) -> None:
		with self.assertRaises ( event_handling.Closed ):
			try:
				with event_handling.close_if_oserror():
					raise OSError ( 'foo' )
			except event_handling.Closed as e:
				self.assertEqual ( repr ( e ), '''Closed("OSError('foo')")''' )
				raise
		for exc in ( trio.BrokenResourceError ( 'gone' ), trio.ClosedResourceError ( 'closed' ) ):
			with self.assertRaises ( event_handling.Closed ):
				with event_handling.close_if_oserror():
					raise exc
		# anything else passes through untouched
		with self.assertRaises ( ValueError ):
			with event_handling.close_if_oserror():
				raise ValueError ( 'foo' )

	def test_timeouts_are_timeouts ( self ) -> None:
		self.assertTrue ( issubclass ( event_handling.ConnectTimeout, TimeoutError ) )
		self.assertTrue ( issubclass ( event_handling.RequestTimeout, TimeoutError ) )

	def test_abstract_client ( self ) -> None:
		test = self
		class Incomplete ( event_handling.AsyncClient ):
			protocls = event_handling.ClientProtocol
			async def _open_transport ( self ) -> event_handling.AsyncTransport:
				return await super()._open_transport()
			async def _handshake ( self ) -> None:
				await super()._handshake()
		async def _test() -> None:
			async with trio.open_nursery() as nursery:
				cli = Incomplete ( nursery, Config ( 'localhost' ) )
				test.assertEqual ( cli.state, event_handling.State.INACTIVE )
				test.assertFalse ( cli.connected )
				with test.assertRaises ( NotImplementedError ):
					await cli._open_transport()
				with test.assertRaises ( NotImplementedError ):
					await cli._handshake()
				with test.assertRaises ( event_handling.Closed ):
					await cli._write ( b'QUIT\r\n' )
				await cli.destroy()
				test.assertEqual ( cli.state, event_handling.State.DISCONNECTED )
		trio.run ( _test )

if __name__ == '__main__':
	logging.basicConfig ( level = logging.DEBUG )
	unittest.main()
