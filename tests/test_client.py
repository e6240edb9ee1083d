import unittest

import httpx
from fastapi.testclient import TestClient

from tamperseal import kernel as ks
from tamperseal.api import app
from tamperseal.client import TamperSealClient


class ClientAgainstAppTests(unittest.TestCase):
    def setUp(self):
        self.http = TestClient(app)
        self.http.__enter__()
        self.client = TamperSealClient(http=self.http)
        self.client.register()

    def tearDown(self):
        self.client.close()
        self.http.__exit__(None, None, None)

    def test_write_then_read_verifies_both_sides(self):
        self.client.write("Hello World")
        verdict = self.client.read()
        self.assertEqual(verdict.payload, "Hello World")
        self.assertTrue(verdict.verified)
        self.assertTrue(self.client.verify_locally(verdict))

    def test_forged_write_raises_integrity_failed(self):
        self.client.write("Hello World")
        rec = ks.IntegrityCodec.seal("Tampered", self.client.identity.secret)
        with self.assertRaises(ks.IntegrityFailedError):
            self.client.write_raw(rec.payload, rec.checksum, "00" * 64)
        self.assertEqual(self.client.read().payload, "Hello World")

    def test_recover_and_history(self):
        self.client.write("first")
        self.client.write("second")
        recovered = self.client.recover()
        self.assertEqual(recovered.payload, "first")
        self.assertTrue(recovered.verified)
        self.assertEqual(len(self.client.history()), 3)

    def test_other_clients_write_is_unverified_for_me(self):
        other = TamperSealClient(http=self.http)
        other.register()
        other.write("theirs")
        verdict = self.client.read()
        self.assertEqual(verdict.payload, "theirs")
        self.assertFalse(verdict.verified)
        self.assertFalse(self.client.verify_locally(verdict))

    def test_unregistered_client(self):
        anon = TamperSealClient(http=self.http)
        with self.assertRaises(ks.UnauthorizedError):
            anon.read()
        with self.assertRaises(ks.UnauthorizedError):
            anon.write("nope")


class ClientErrorMappingTests(unittest.TestCase):
    def _client(self, status, body):
        transport = httpx.MockTransport(lambda request: httpx.Response(status, json=body))
        return TamperSealClient(http=httpx.Client(transport=transport, base_url="http://ts"))

    def test_not_found(self):
        c = self._client(404, {"error": "not_found", "detail": "No previous data available to recover."})
        with self.assertRaises(ks.NotFoundError):
            c.recover()

    def test_rate_limited(self):
        c = self._client(429, {"error": "rate_limited", "detail": "Too many requests, please try again later."})
        with self.assertRaises(ks.RateLimitedError):
            c.read()

    def test_malformed(self):
        c = self._client(400, {"error": "malformed_request", "detail": "bad body"})
        with self.assertRaises(ks.MalformedRequestError):
            c.write_raw("p", "c", "t")

    def test_unknown_error_falls_back_to_base(self):
        c = self._client(500, {"detail": "boom"})
        with self.assertRaises(ks.TamperSealError):
            c.read()


if __name__ == "__main__":
    unittest.main()
