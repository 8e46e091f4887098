import trustme # pip install trustme
import ssl

class ServerOnly:
	'''
	A throwaway CA plus one server certificate, for exercising NNTPS
	without touching the system trust store.
	'''
	def __init__ ( self, *,
		server_hostname: str, # ex: 'news.example.org'
	) -> None:
		self.server_hostname = server_hostname
		self.ca = trustme.CA()
		self.server_cert = self.ca.issue_cert ( self.server_hostname )

	def server_context ( self ) -> ssl.SSLContext:
		# news clients don't present certificates, so no verification here
		ctx = ssl.create_default_context ( ssl.Purpose.CLIENT_AUTH )
		self.server_cert.configure_cert ( ctx )
		ctx.verify_mode = ssl.CERT_NONE
		return ctx

	def client_context ( self ) -> ssl.SSLContext:
		ctx = ssl.create_default_context ( ssl.Purpose.SERVER_AUTH )
		self.ca.configure_trust ( ctx )
		return ctx
