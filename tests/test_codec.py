import re
import unittest
import uuid
from datetime import timedelta

import jwt

from app.core.codec import CREDENTIAL_AUD, CredentialCodec, KIND_DELIVERY, KIND_VISITOR, new_passcode
from app.core.errors import CredentialExpired, CredentialInvalid
from support import FrozenClock, flip_signature_char


class TestCredentialCodec(unittest.TestCase):
    def setUp(self):
        self.clock = FrozenClock()
        self.codec = CredentialCodec("codec-secret", clock=self.clock)
        self.subject_id = uuid.uuid4()
        self.community_id = uuid.uuid4()
        self.expires_at = self.clock.now() + timedelta(hours=24)

    def issue(self, kind=KIND_VISITOR):
        return self.codec.issue(
            subject_id=self.subject_id, community_id=self.community_id, expires_at=self.expires_at, kind=kind
        )

    def test_visitor_code_format(self):
        code, _ = self.issue()
        self.assertRegex(code, r"^VIS-[0-9A-F]{16}$")

    def test_delivery_passcode_format(self):
        code, _ = self.issue(kind=KIND_DELIVERY)
        self.assertTrue(re.fullmatch(r"[0-9]{6}", code))
        for _ in range(200):
            self.assertTrue(100000 <= int(new_passcode()) <= 999999)

    def test_public_codes_are_not_reused(self):
        codes = {self.issue()[0] for _ in range(50)}
        self.assertEqual(len(codes), 50)

    def test_verify_returns_issued_ids(self):
        _, token = self.issue()
        claims = self.codec.verify(token)
        self.assertEqual(claims.subject_id, self.subject_id)
        self.assertEqual(claims.community_id, self.community_id)
        self.assertEqual(claims.kind, KIND_VISITOR)
        self.assertEqual(claims.expires_at, self.expires_at)

    def test_fractional_expiry_is_not_cut_short(self):
        expires_at = self.clock.now() + timedelta(seconds=10, milliseconds=500)
        _, token = self.codec.issue(
            subject_id=self.subject_id, community_id=self.community_id, expires_at=expires_at
        )
        self.clock.advance(seconds=10, milliseconds=250)
        self.assertGreaterEqual(self.codec.verify(token).expires_at, expires_at)
        self.clock.advance(seconds=1)
        with self.assertRaises(CredentialExpired):
            self.codec.verify(token)

    def test_verify_just_before_expiry(self):
        _, token = self.issue()
        self.clock.advance(hours=23, minutes=59, seconds=59)
        self.assertEqual(self.codec.verify(token).subject_id, self.subject_id)

    def test_expired_at_boundary_and_after(self):
        _, token = self.issue()
        self.clock.advance(hours=24)
        with self.assertRaises(CredentialExpired):
            self.codec.verify(token)
        self.clock.advance(days=3)
        with self.assertRaises(CredentialExpired):
            self.codec.verify(token)

    def test_flipped_signature_is_invalid(self):
        _, token = self.issue()
        with self.assertRaises(CredentialInvalid):
            self.codec.verify(flip_signature_char(token))

    def test_tamper_beats_expiry(self):
        # a forged token is reported as forged even once it would have expired
        _, token = self.issue()
        self.clock.advance(days=2)
        with self.assertRaises(CredentialInvalid):
            self.codec.verify(flip_signature_char(token))

    def test_extended_expiry_is_invalid(self):
        _, token = self.issue()
        payload = jwt.decode(token, options={"verify_signature": False})
        payload["exp"] += 3600
        forged = jwt.encode(payload, "not-the-secret", algorithm="HS256")
        with self.assertRaises(CredentialInvalid):
            self.codec.verify(forged)

    def test_other_secret_is_invalid(self):
        _, token = self.issue()
        other = CredentialCodec("another-secret", clock=self.clock)
        with self.assertRaises(CredentialInvalid):
            other.verify(token)

    def test_wrong_audience_is_invalid(self):
        payload = {
            "aud": "trail-checkin",
            "iss": self.codec.issuer,
            "exp": int(self.expires_at.timestamp()),
            "scope": "admit",
            "kind": KIND_VISITOR,
            "subject_id": str(self.subject_id),
            "community_id": str(self.community_id),
        }
        token = jwt.encode(payload, "codec-secret", algorithm="HS256")
        with self.assertRaises(CredentialInvalid):
            self.codec.verify(token)
        payload["aud"] = CREDENTIAL_AUD
        self.assertEqual(self.codec.verify(jwt.encode(payload, "codec-secret", algorithm="HS256")).kind, KIND_VISITOR)

    def test_garbage_is_invalid(self):
        with self.assertRaises(CredentialInvalid):
            self.codec.verify("not-a-token")

    def test_cannot_sign_in_the_past(self):
        with self.assertRaises(ValueError):
            self.codec.issue(
                subject_id=self.subject_id,
                community_id=self.community_id,
                expires_at=self.clock.now() - timedelta(seconds=1),
            )

    def test_empty_secret_rejected(self):
        with self.assertRaises(ValueError):
            CredentialCodec("")
