"""test_layer.py — Unit tests for gate_shared layer modules.

Run from the repository root after ``pip install -e .[test]``:
    python3 -m pytest backend/lambda/shared_layer/test_layer.py -v
"""

from __future__ import annotations

import json
import time
import unittest
import urllib.error
from decimal import Decimal
from unittest.mock import MagicMock, patch

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

import gate_shared.auth as auth_mod
from gate_shared.auth import _authenticate, _extract_token, _header, _verify_token
from gate_shared.aws_clients import _get_ddb, _get_sns
from gate_shared.http_utils import _error, _parse_body, _path_method, _query_params, _response
from gate_shared.serialization import _deserialize, _now_ms_z, _now_z, _serialize, _serialize_item, _unix_now


class AuthTests(unittest.TestCase):
    def test_extract_token_prefers_bearer_header(self):
        event = {
            "headers": {
                "Authorization": "Bearer header-token",
                "cookie": "gate_id_token=cookie-token",
            }
        }
        self.assertEqual(_extract_token(event), "header-token")

    def test_extract_token_from_cookie_header(self):
        event = {"headers": {"cookie": "theme=dark; gate_id_token=abc123"}}
        self.assertEqual(_extract_token(event), "abc123")

    def test_extract_token_from_cookies_array(self):
        event = {"headers": {}, "cookies": ["other=val", "gate_id_token=xyz789"]}
        self.assertEqual(_extract_token(event), "xyz789")

    def test_extract_token_missing(self):
        self.assertIsNone(_extract_token({"headers": {"cookie": "other=val"}}))

    def test_header_lookup_is_case_insensitive(self):
        self.assertEqual(_header({"headers": {"X-Gate-Actor-Id": "u1"}}, "x-gate-actor-id"), "u1")

    def test_internal_key_names_actor(self):
        event = {"headers": {"X-Gate-Internal-Key": "svc-key", "X-Gate-Actor-Id": " admin-1 "}}
        with patch.object(auth_mod, "INTERNAL_API_KEYS", ("svc-key",)):
            claims, err = _authenticate(event)
        self.assertIsNone(err)
        self.assertEqual(claims, {"auth_mode": "internal-key", "actor_id": "admin-1"})

    def test_rollover_internal_key_accepted(self):
        event = {"headers": {"x-gate-internal-key": "previous-key"}}
        with patch.object(auth_mod, "INTERNAL_API_KEYS", ("active-key", "previous-key")):
            claims, err = _authenticate(event)
        self.assertIsNone(err)
        self.assertEqual(claims["auth_mode"], "internal-key")

    def test_wrong_internal_key_falls_through_to_401(self):
        event = {"headers": {"x-gate-internal-key": "guess"}}
        with patch.object(auth_mod, "INTERNAL_API_KEYS", ("active-key",)):
            claims, err = _authenticate(event, error_fn=_error)
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)
        self.assertEqual(json.loads(err["body"])["code"], "UNAUTHORIZED")

    def test_invalid_token_is_401(self):
        event = {"headers": {"authorization": "Bearer not-a-jwt"}}
        with patch.object(auth_mod, "INTERNAL_API_KEYS", ()), patch.object(
            auth_mod, "_verify_token", side_effect=ValueError("Invalid token")
        ):
            claims, err = _authenticate(event)
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)

    def test_valid_token_returns_claims(self):
        event = {"headers": {"authorization": "Bearer good"}}
        with patch.object(auth_mod, "INTERNAL_API_KEYS", ()), patch.object(
            auth_mod, "_verify_token", return_value={"sub": "u1", "custom:role": "admin"}
        ):
            claims, err = _authenticate(event)
        self.assertIsNone(err)
        self.assertEqual(claims["sub"], "u1")


_POOL_ID = "us-east-1_TestPool"
_CLIENT_ID = "gate-web-client"


def _rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwks_response(*public_keys):
    keys = []
    for kid, public_key in public_keys:
        jwk = json.loads(RSAAlgorithm.to_jwk(public_key))
        jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
        keys.append(jwk)
    resp = MagicMock()
    resp.__enter__.return_value.read.return_value = json.dumps({"keys": keys}).encode()
    return resp


class TokenVerificationTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.signing_key = _rsa_key()
        cls.rogue_key = _rsa_key()

    def setUp(self):
        auth_mod._signing_keys = {}
        auth_mod._signing_keys_loaded_at = 0.0
        self.jwks = _jwks_response(("kid-1", self.signing_key.public_key()))
        for name, value in (
            ("COGNITO_USER_POOL_ID", _POOL_ID),
            ("COGNITO_CLIENT_ID", _CLIENT_ID),
            ("INTERNAL_API_KEYS", ()),
        ):
            p = patch.object(auth_mod, name, value)
            p.start()
            self.addCleanup(p.stop)
        urlopen_patch = patch.object(auth_mod.urllib.request, "urlopen", return_value=self.jwks)
        self.urlopen = urlopen_patch.start()
        self.addCleanup(urlopen_patch.stop)
        self.addCleanup(setattr, auth_mod, "_signing_keys", {})

    def _token(self, *, key=None, kid="kid-1", **overrides):
        now = int(time.time())
        claims = {
            "sub": "resident-1",
            "aud": _CLIENT_ID,
            "token_use": "id",
            "iat": now,
            "exp": now + 300,
        }
        claims.update(overrides)
        return jwt.encode(claims, key or self.signing_key, algorithm="RS256", headers={"kid": kid})

    def test_valid_token_returns_claims(self):
        claims = _verify_token(self._token())
        self.assertEqual(claims["sub"], "resident-1")
        url = self.urlopen.call_args.args[0]
        self.assertEqual(url, f"https://cognito-idp.us-east-1.amazonaws.com/{_POOL_ID}/.well-known/jwks.json")

    def test_forged_signature_rejected(self):
        with self.assertRaisesRegex(ValueError, "Token rejected"):
            _verify_token(self._token(key=self.rogue_key))

    def test_unknown_kid_rejected(self):
        with self.assertRaisesRegex(ValueError, "unknown key"):
            _verify_token(self._token(kid="kid-2"))

    def test_expired_token_rejected(self):
        with self.assertRaisesRegex(ValueError, "expired"):
            _verify_token(self._token(exp=int(time.time()) - 60))

    def test_wrong_audience_rejected(self):
        with self.assertRaisesRegex(ValueError, "different client"):
            _verify_token(self._token(aud="someone-else"))

    def test_non_rs256_algorithm_rejected(self):
        token = jwt.encode(
            {"sub": "resident-1", "aud": _CLIENT_ID, "token_use": "id"},
            "a-shared-secret-that-is-long-enough-for-hs256",
            algorithm="HS256",
            headers={"kid": "kid-1"},
        )
        with self.assertRaisesRegex(ValueError, "Unsupported token algorithm"):
            _verify_token(token)
        self.urlopen.assert_not_called()

    def test_access_token_rejected(self):
        with self.assertRaisesRegex(ValueError, "ID token is required"):
            _verify_token(self._token(token_use="access"))

    def test_malformed_token_rejected(self):
        with self.assertRaisesRegex(ValueError, "Malformed token"):
            _verify_token("not-a-jwt")

    def test_jwks_outage_rejected(self):
        self.urlopen.side_effect = urllib.error.URLError("down")
        with self.assertRaisesRegex(ValueError, "Signing keys unavailable"):
            _verify_token(self._token())

    def test_jwks_cached_until_ttl_lapses(self):
        _verify_token(self._token())
        _verify_token(self._token())
        self.assertEqual(self.urlopen.call_count, 1)

        auth_mod._signing_keys_loaded_at -= auth_mod.JWKS_TTL_SECONDS + 1
        _verify_token(self._token())
        self.assertEqual(self.urlopen.call_count, 2)

    def test_authenticate_valid_bearer(self):
        claims, err = _authenticate({"headers": {"Authorization": f"Bearer {self._token()}"}}, error_fn=_error)
        self.assertIsNone(err)
        self.assertEqual(claims["sub"], "resident-1")

    def test_authenticate_rejections_are_401(self):
        tokens = [
            self._token(key=self.rogue_key),
            self._token(kid="kid-2"),
            self._token(exp=int(time.time()) - 60),
            self._token(aud="someone-else"),
            self._token(token_use="access"),
        ]
        for token in tokens:
            claims, err = _authenticate({"cookies": [f"gate_id_token={token}"]}, error_fn=_error)
            self.assertIsNone(claims)
            self.assertEqual(err["statusCode"], 401)
            self.assertEqual(json.loads(err["body"])["code"], "UNAUTHORIZED")

class HttpUtilsTests(unittest.TestCase):
    def test_response_carries_cors_and_json(self):
        resp = _response(200, {"count": Decimal("3")})
        self.assertEqual(resp["statusCode"], 200)
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])
        self.assertEqual(json.loads(resp["body"]), {"count": 3})

    def test_error_codes_follow_status(self):
        for status, code in ((400, "INVALID_INPUT"), (403, "FORBIDDEN"), (404, "NOT_FOUND"), (502, "INTERNAL_ERROR")):
            body = json.loads(_error(status, "x")["body"])
            self.assertFalse(body["success"])
            self.assertEqual(body["code"], code)

    def test_error_explicit_code_and_details(self):
        body = json.loads(
            _error(400, "bad move", code="invalid_transition", details={"currentStatus": "denied"})["body"]
        )
        self.assertEqual(body["code"], "INVALID_TRANSITION")
        self.assertEqual(body["details"], {"currentStatus": "denied"})

    def test_parse_body_base64(self):
        import base64

        raw = base64.b64encode(b'{"visitorId": "v1"}').decode()
        self.assertEqual(_parse_body({"body": raw, "isBase64Encoded": True}), {"visitorId": "v1"})

    def test_parse_body_rejects_non_object(self):
        with self.assertRaises(ValueError):
            _parse_body({"body": "[1, 2]"})
        with self.assertRaises(ValueError):
            _parse_body({"body": "{not json"})

    def test_parse_body_empty(self):
        self.assertEqual(_parse_body({"body": ""}), {})

    def test_path_method(self):
        event = {"requestContext": {"http": {"method": "post", "path": "/api/approve"}}}
        self.assertEqual(_path_method(event), ("POST", "/api/approve"))

    def test_query_params_drop_none(self):
        self.assertEqual(_query_params({"queryStringParameters": {"status": "pending", "x": None}}), {"status": "pending"})


class SerializationTests(unittest.TestCase):
    def test_serialize_float_as_number(self):
        self.assertEqual(_serialize(2.5), {"N": "2.5"})

    def test_serialize_item_drops_none(self):
        item = _serialize_item({"visitor_id": "v1", "approvedBy": None})
        self.assertEqual(item, {"visitor_id": {"S": "v1"}})

    def test_deserialize_nested_numbers(self):
        item = {"payload": {"M": {"count": {"N": "4"}, "ratio": {"N": "0.5"}}}}
        self.assertEqual(_deserialize(item), {"payload": {"count": 4, "ratio": 0.5}})

    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_now_ms_z_format(self):
        self.assertRegex(_now_ms_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")

    def test_unix_now(self):
        import time

        self.assertAlmostEqual(_unix_now(), int(time.time()), delta=2)


class AwsClientTests(unittest.TestCase):
    @patch("gate_shared.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        import gate_shared.aws_clients as clients

        clients._ddb = None
        mock_boto3.client.return_value = MagicMock()
        try:
            self.assertIs(_get_ddb(), _get_ddb())
            mock_boto3.client.assert_called_once()
        finally:
            clients._ddb = None

    @patch("gate_shared.aws_clients.boto3")
    def test_sns_client_has_timeouts(self, mock_boto3):
        import gate_shared.aws_clients as clients

        clients._sns = None
        try:
            _get_sns()
            config = mock_boto3.client.call_args.kwargs["config"]
            self.assertEqual(mock_boto3.client.call_args.args[0], "sns")
            self.assertEqual(config.connect_timeout, clients.CONNECT_TIMEOUT_SECONDS)
            self.assertEqual(config.read_timeout, clients.READ_TIMEOUT_SECONDS)
        finally:
            clients._sns = None


if __name__ == "__main__":
    unittest.main()
