# python imports:
import datetime
import logging
from pathlib import Path
import sys
from typing import Iterable, List
import unittest

if __name__ == '__main__': # pragma: no cover
	sys.path.append ( str ( Path ( __file__ ).parent.parent.absolute() ) )

# nntp_client imports:
import base_proto
import nntp_proto as proto

logger = logging.getLogger ( __name__ )

MESSAGE = (
	b'From: poster@example.org\r\n'
	b'Newsgroups: misc.test\r\n'
	b'Subject: hello\r\n'
	b'\r\n'
	b'just testing\r\n'
	b'.\r\n'
)

def sent ( events: Iterable[base_proto.Event] ) -> List[bytes]:
	data: List[bytes] = []
	for evt in events:
		assert isinstance ( evt, base_proto.SendDataEvent ), f'unexpected {evt=}'
		data.append ( b''.join ( evt.chunks ) )
	return data


class Tests ( unittest.TestCase ):
	def test_response_parse ( self ) -> None:
		test = self
		r = proto.Response.parse ( b'200 news.example.org ready \r\n' )
		test.assertEqual ( repr ( r ), "nntp_proto.Response(200, 'news.example.org ready')" )
		test.assertTrue ( r.is_success() )
		test.assertFalse ( proto.Response.parse ( b'411 No such newsgroup\r\n' ).is_success() )
		for line in ( b'20 short\r\n', b'200\r\n', b'abc def\r\n', b'200 no terminator' ):
			with test.assertRaises ( proto.MalformedResponse ):
				proto.Response.parse ( line )

	def test_greeting ( self ) -> None:
		test = self
		cli = proto.Client()
		req = proto.GreetingRequest()
		test.assertEqual ( sent ( cli.send ( req ) ), [] ) # the server talks first
		test.assertTrue ( cli.pending )
		test.assertEqual ( sent ( cli.receive ( b'200 news.example.org ready\r\n' ) ), [] )
		test.assertTrue ( req.response.can_post )
		test.assertTrue ( cli.can_post )

		req = proto.GreetingRequest()
		list ( cli.send ( req ) )
		list ( cli.receive ( b'201 news.example.org ready (no posting)\r\n' ) )
		test.assertFalse ( req.response.can_post )
		test.assertFalse ( cli.can_post )

		list ( cli.send ( proto.GreetingRequest() ) )
		with test.assertRaises ( proto.UnexpectedResponse ) as cm:
			list ( cli.receive ( b'502 go away\r\n' ) )
		test.assertEqual ( cm.exception.command, 'connect' )
		test.assertEqual ( cm.exception.code, 502 )
		test.assertEqual ( str ( cm.exception ), 'Unexpected response to connect (code: 502): go away' )

	def test_auth ( self ) -> None:
		test = self
		cli = proto.Client()
		req = proto.AuthInfoRequest ( 'mrose', 'tanstaaf' )
		test.assertEqual ( sent ( cli.send ( req ) ), [ b'AUTHINFO USER mrose\r\n' ] )
		events = list ( cli.receive ( b'381 password please\r\n' ) )
		test.assertEqual ( len ( events ), 1 )
		test.assertIsInstance ( events[0], proto.SendSecretEvent )
		test.assertEqual ( sent ( events ), [ b'AUTHINFO PASS tanstaaf\r\n' ] )
		test.assertNotIn ( 'tanstaaf', repr ( events[0] ) )
		test.assertNotIn ( 'tanstaaf', repr ( req ) )
		list ( cli.receive ( b'281 welcome\r\n' ) )
		test.assertEqual ( req.response.code, 281 )

		list ( cli.send ( proto.AuthInfoRequest ( 'mrose', 'wrong' ) ) )
		list ( cli.receive ( b'381 password please\r\n' ) )
		with test.assertRaises ( proto.UnexpectedResponse ) as cm:
			list ( cli.receive ( b'481 authentication failed\r\n' ) )
		test.assertEqual ( cm.exception.command, 'AUTHINFO PASS' )

		list ( cli.send ( proto.AuthInfoRequest ( 'nobody', 'x' ) ) )
		with test.assertRaises ( proto.UnexpectedResponse ) as cm:
			list ( cli.receive ( b'502 not for you\r\n' ) )
		test.assertEqual ( cm.exception.command, 'AUTHINFO USER' )

	def test_group ( self ) -> None:
		test = self
		cli = proto.Client()
		req = proto.GroupRequest ( 'misc.test' )
		test.assertEqual ( sent ( cli.send ( req ) ), [ b'GROUP misc.test\r\n' ] )
		with test.assertRaises ( proto.NoSuchGroup ) as cm:
			list ( cli.receive ( b'411 No such newsgroup\r\n' ) )
		test.assertEqual ( cm.exception.command, 'GROUP' )
		test.assertEqual ( cm.exception.code, 411 )
		test.assertIsNone ( cli.current_group )
		test.assertFalse ( cli.pending )

		req = proto.GroupRequest ( 'misc.test' )
		list ( cli.send ( req ) )
		test.assertEqual ( sent ( cli.receive ( b'211 100 1 100 misc.test\r\n' ) ), [] )
		test.assertEqual ( cli.current_group, 'misc.test' )
		r = req.response
		test.assertEqual ( ( r.count, r.first, r.last, r.name ), ( 100, 1, 100, 'misc.test' ) )

		# a failed select leaves the previous group selected
		list ( cli.send ( proto.GroupRequest ( 'alt.nope' ) ) )
		with test.assertRaises ( proto.NoSuchGroup ):
			list ( cli.receive ( b'411 No such newsgroup\r\n' ) )
		test.assertEqual ( cli.current_group, 'misc.test' )

		list ( cli.send ( proto.GroupRequest ( 'alt.nope' ) ) )
		with test.assertRaises ( proto.UnexpectedResponse ):
			list ( cli.receive ( b'480 authentication required\r\n' ) )
		test.assertEqual ( cli.current_group, 'misc.test' )

		# servers that say less still get a usable response
		req = proto.GroupRequest ( 'misc.test' )
		list ( cli.send ( req ) )
		list ( cli.receive ( b'211 group selected\r\n' ) )
		test.assertEqual ( ( req.response.count, req.response.name ), ( 0, '' ) )

		with test.assertRaises ( AssertionError ):
			proto.GroupRequest ( 'misc.test\r\nPOST' )

	def test_date ( self ) -> None:
		test = self
		cli = proto.Client()
		req = proto.DateRequest()
		test.assertEqual ( sent ( cli.send ( req ) ), [ b'DATE\r\n' ] )
		list ( cli.receive ( b'111 20230615143000\r\n' ) )
		test.assertEqual ( req.response.date, datetime.datetime ( 2023, 6, 15, 14, 30, 0, tzinfo = datetime.timezone.utc ) )

		for line in ( b'111 2023061514300\r\n', b'111 20231345999999\r\n', b'111 yesterday\r\n' ):
			list ( cli.send ( proto.DateRequest() ) )
			with test.assertRaises ( proto.InvalidDate ) as cm:
				list ( cli.receive ( line ) )
			test.assertEqual ( cm.exception.command, 'DATE' )

		list ( cli.send ( proto.DateRequest() ) )
		with test.assertRaises ( proto.UnexpectedResponse ):
			list ( cli.receive ( b'500 What?\r\n' ) )

	def test_stat ( self ) -> None:
		test = self
		cli = proto.Client()
		req = proto.StatRequest ( 42 )
		test.assertEqual ( sent ( cli.send ( req ) ), [ b'STAT 42\r\n' ] )
		list ( cli.receive ( b'223 42 <abc@example> article retrieved\r\n' ) )
		test.assertEqual ( req.response.article, ( 42, 'abc@example' ) )
		test.assertEqual ( req.response.article, proto.Article ( number = 42, message_id = 'abc@example' ) )

		req = proto.StatRequest ( 'abc@example' )
		test.assertEqual ( sent ( cli.send ( req ) ), [ b'STAT <abc@example>\r\n' ] )
		list ( cli.receive ( b'430 No such article\r\n' ) )
		test.assertIsNone ( req.response.article )
		test.assertEqual ( req.response.code, 430 )

		req = proto.StatRequest ( 7 )
		list ( cli.send ( req ) )
		list ( cli.receive ( b'423 No article with that number\r\n' ) )
		test.assertIsNone ( req.response.article )

		list ( cli.send ( proto.StatRequest ( 7 ) ) )
		with test.assertRaises ( proto.NoGroupSelected ):
			list ( cli.receive ( b'412 No newsgroup selected\r\n' ) )

		list ( cli.send ( proto.StatRequest ( 7 ) ) )
		with test.assertRaises ( proto.MalformedResponse ) as cm:
			list ( cli.receive ( b'223 seven\r\n' ) )
		test.assertEqual ( cm.exception.command, 'STAT' )

		list ( cli.send ( proto.StatRequest ( 7 ) ) )
		with test.assertRaises ( proto.UnexpectedResponse ):
			list ( cli.receive ( b'500 What?\r\n' ) )

	def test_post ( self ) -> None:
		test = self
		cli = proto.Client()
		with test.assertRaises ( proto.PostingNotAllowed ):
			list ( cli.send ( proto.PostRequest ( MESSAGE, 1 ) ) )
		test.assertFalse ( cli.pending )

		cli.can_post = True
		req = proto.PostRequest ( MESSAGE, 1 )
		test.assertEqual ( sent ( cli.send ( req ) ), [ b'POST\r\n' ] )
		test.assertEqual ( sent ( cli.receive ( b'340 send article\r\n' ) ), [ MESSAGE ] )
		# rejected, the whole sequence starts over
		test.assertEqual ( sent ( cli.receive ( b'441 try again later\r\n' ) ), [ b'POST\r\n' ] )
		test.assertEqual ( sent ( cli.receive ( b'340 send article\r\n' ) ), [ MESSAGE ] )
		test.assertEqual ( sent ( cli.receive ( b'240 <new@example> Article received ok\r\n' ) ), [] )
		test.assertEqual ( req.response.message_id, 'new@example' )

		# the retry budget is per call
		req = proto.PostRequest ( MESSAGE, 1 )
		list ( cli.send ( req ) )
		list ( cli.receive ( b'340 send article\r\n' ) )
		test.assertEqual ( sent ( cli.receive ( b'441 try again later\r\n' ) ), [ b'POST\r\n' ] )
		list ( cli.receive ( b'340 send article\r\n' ) )
		with test.assertRaises ( proto.PostRejected ) as cm:
			list ( cli.receive ( b'441 try again later\r\n' ) )
		test.assertEqual ( cm.exception.code, 441 )
		test.assertEqual ( cm.exception.command, 'POST' )

		list ( cli.send ( proto.PostRequest ( MESSAGE, 0 ) ) )
		with test.assertRaises ( proto.UnexpectedResponse ):
			list ( cli.receive ( b'440 posting not permitted\r\n' ) )

		list ( cli.send ( proto.PostRequest ( MESSAGE, 0 ) ) )
		list ( cli.receive ( b'340 send article\r\n' ) )
		with test.assertRaises ( proto.MalformedResponse ):
			list ( cli.receive ( b'240 Article received ok\r\n' ) )

		with test.assertRaises ( AssertionError ):
			proto.PostRequest ( b'no end of body marker\r\n', 1 )

	def test_notices ( self ) -> None:
		test = self
		cli = proto.Client()
		list ( cli.send ( proto.DateRequest() ) )
		with test.assertLogs ( 'base_proto', level = 'DEBUG' ) as cm:
			test.assertEqual ( sent ( cli.receive ( b'400 idle for too long\r\n205 closing' ) ), [] )
			test.assertEqual ( sent ( cli.receive ( b' connection\r\n' ) ), [] )
		test.assertEqual ( [ r for r in cm.records if r.levelno >= logging.WARNING ], [] )
		test.assertTrue ( cli.pending )
		req = proto.DateRequest()
		cli.cancel()
		list ( cli.send ( req ) )
		list ( cli.receive ( b'400 idle\r\n111 20230615143000\r\n' ) )
		test.assertEqual ( req.response.date.year, 2023 )

		# notices with nobody waiting aren't worth a warning either
		with test.assertLogs ( 'base_proto', level = 'DEBUG' ) as cm:
			list ( cli.receive ( b'205 bye\r\n' ) )
		test.assertEqual ( [ r for r in cm.records if r.levelno >= logging.WARNING ], [] )

	def test_unexpected_and_stale_lines ( self ) -> None:
		test = self
		cli = proto.Client()
		with test.assertLogs ( 'base_proto', level = 'WARNING' ) as cm:
			test.assertEqual ( sent ( cli.receive ( b'200 hello?\r\n' ) ), [] )
		test.assertIn ( 'unexpected response received: 200 hello?', cm.output[0] )

		# timed out request: the late answer must not be matched to anything
		list ( cli.send ( proto.DateRequest() ) )
		cli.cancel()
		test.assertFalse ( cli.pending )
		with test.assertLogs ( 'base_proto', level = 'WARNING' ):
			list ( cli.receive ( b'111 20230615143000\r\n' ) )
		req = proto.GroupRequest ( 'misc.test' )
		list ( cli.send ( req ) )
		list ( cli.receive ( b'211 1 1 1 misc.test\r\n' ) )
		test.assertEqual ( req.response.name, 'misc.test' )

		# garbage when nobody is waiting is only logged
		with test.assertLogs ( 'base_proto', level = 'WARNING' ):
			list ( cli.receive ( b'garbage\r\n' ) )

	def test_lines_behind_an_error_response ( self ) -> None:
		test = self
		cli = proto.Client()
		list ( cli.send ( proto.GroupRequest ( 'alt.gone' ) ) )
		with test.assertRaises ( proto.NoSuchGroup ):
			list ( cli.receive ( b'411 No such newsgroup\r\n199 stray\r\n111 2023' ) )
		test.assertEqual ( cli._buf, b'199 stray\r\n111 2023' )
		with test.assertLogs ( 'base_proto', level = 'WARNING' ) as cm:
			test.assertEqual ( sent ( cli.receive_buffered() ), [] )
		test.assertIn ( 'unexpected response received: 199 stray', cm.output[0] )
		# the partial line behind it belongs to the next request
		req = proto.DateRequest()
		list ( cli.send ( req ) )
		list ( cli.receive ( b'0615143000\r\n' ) )
		test.assertEqual ( req.response.date.year, 2023 )

	def test_malformed_line_goes_to_pending_request ( self ) -> None:
		test = self
		cli = proto.Client()
		list ( cli.send ( proto.DateRequest() ) )
		with test.assertRaises ( proto.MalformedResponse ) as cm:
			list ( cli.receive ( b'this is not a status line\r\n' ) )
		test.assertEqual ( cm.exception.command, 'DATE' )
		test.assertFalse ( cli.pending )
		# still usable
		req = proto.DateRequest()
		list ( cli.send ( req ) )
		list ( cli.receive ( b'111 20230615143000\r\n' ) )
		test.assertEqual ( req.response.date.month, 6 )

	def test_single_outstanding_request ( self ) -> None:
		test = self
		cli = proto.Client()
		first = proto.DateRequest()
		list ( cli.send ( first ) )
		with test.assertRaises ( AssertionError ):
			list ( cli.send ( proto.StatRequest ( 1 ) ) )
		list ( cli.receive ( b'111 20230615143000\r\n' ) )
		test.assertEqual ( first.response.date.day, 15 )
		test.assertFalse ( cli.pending )

	def test_reset ( self ) -> None:
		test = self
		cli = proto.Client()
		cli.current_group = 'misc.test'
		list ( cli.send ( proto.DateRequest() ) )
		list ( cli.receive ( b'111 2023' ) )
		cli.reset()
		test.assertEqual ( cli._buf, b'' )
		test.assertFalse ( cli.pending )
		test.assertEqual ( cli.current_group, 'misc.test' )

if __name__ == '__main__':
	logging.basicConfig ( level = logging.DEBUG )
	unittest.main()
