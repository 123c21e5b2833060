import json
import secrets
import time
import unittest

import httpx
from eth_account import Account
from eth_account.messages import encode_typed_data

from fakes import FakeDynamoTable, make_settings
from leasestore.errors import PaymentRequiredError, UpstreamError
from leasestore.payment import (
    ChallengeIssuer,
    TransferAuthorization,
    encode_json_base64,
    parse_payment_proof,
    pricing_policy_from_settings,
    transfer_typed_data,
)
from leasestore.settlement import (
    FacilitatorClient,
    SettlementLog,
    SettlementVerifier,
    check_proof_against_challenge,
    mock_settlement_tx_id,
)


def signed_proof(account, challenge, **overrides):
    now = int(time.time())
    fields = {
        "signature": "",
        "from_address": account.address.lower(),
        "to_address": challenge.pay_to.lower(),
        "value": challenge.amount,
        "valid_after": now - 60,
        "valid_before": now + 300,
        "nonce": f"0x{secrets.token_hex(32)}",
        "network": challenge.network,
        "asset": challenge.asset.lower(),
        "domain_name": challenge.extra["name"],
        "domain_version": challenge.extra["version"],
    }
    fields.update(overrides)
    authorization = TransferAuthorization(**fields)
    signed = account.sign_message(encode_typed_data(**transfer_typed_data(authorization)))
    header = encode_json_base64(
        {
            "x402Version": 2,
            "accepted": challenge.requirements(),
            "payload": {
                "signature": f"0x{bytes(signed.signature).hex()}",
                "authorization": {
                    "from": authorization.from_address,
                    "to": authorization.to_address,
                    "value": str(authorization.value),
                    "validAfter": str(authorization.valid_after),
                    "validBefore": str(authorization.valid_before),
                    "nonce": authorization.nonce,
                },
            },
        }
    )
    return parse_payment_proof(header)


class LocalProofCheckTests(unittest.TestCase):
    def setUp(self):
        settings = make_settings()
        issuer = ChallengeIssuer(settings.payment, pricing_policy_from_settings(settings.pricing))
        self.challenge = issuer.issue("/upload", "Upload")
        self.account = Account.create()

    def test_valid_proof_passes(self):
        proof = signed_proof(self.account, self.challenge)

        authorization = check_proof_against_challenge(proof, self.challenge)

        self.assertEqual(authorization.from_address, self.account.address.lower())

    def test_overpayment_is_accepted(self):
        proof = signed_proof(self.account, self.challenge, value=self.challenge.amount + 1)

        check_proof_against_challenge(proof, self.challenge)

    def test_rejects_underpayment(self):
        proof = signed_proof(self.account, self.challenge, value=self.challenge.amount - 1)

        with self.assertRaises(PaymentRequiredError) as ctx:
            check_proof_against_challenge(proof, self.challenge)
        self.assertIn("amount", ctx.exception.message)
        self.assertEqual(ctx.exception.requirements["amount"], "20000")

    def test_rejects_wrong_payee(self):
        proof = signed_proof(self.account, self.challenge, to_address="0x" + "9" * 40)

        with self.assertRaises(PaymentRequiredError):
            check_proof_against_challenge(proof, self.challenge)

    def test_rejects_expired_authorization(self):
        now = int(time.time())
        proof = signed_proof(self.account, self.challenge, valid_after=now - 600, valid_before=now - 1)

        with self.assertRaises(PaymentRequiredError) as ctx:
            check_proof_against_challenge(proof, self.challenge)
        self.assertIn("expired", ctx.exception.message)

    def test_rejects_signature_from_other_key(self):
        other = Account.create()
        proof = signed_proof(other, self.challenge, from_address=self.account.address.lower())

        with self.assertRaises(PaymentRequiredError) as ctx:
            check_proof_against_challenge(proof, self.challenge)
        self.assertIn("recover", ctx.exception.message)


class MockSettlementTests(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        issuer = ChallengeIssuer(self.settings.payment, pricing_policy_from_settings(self.settings.pricing))
        self.challenge = issuer.issue("/renew/key", "Renew")
        self.account = Account.create()
        self.table = FakeDynamoTable(["proof_id"])
        self.verifier = SettlementVerifier(self.settings.payment, settlement_log=SettlementLog(self.table))

    def test_settles_and_records_proof(self):
        proof = signed_proof(self.account, self.challenge)

        result = self.verifier.verify(proof, self.challenge)

        self.assertTrue(result.settled)
        self.assertFalse(result.replayed)
        self.assertEqual(result.tx_ref, mock_settlement_tx_id(proof.authorization))
        self.assertEqual(result.payer, self.account.address.lower())
        stored = self.table.get_item(Key={"proof_id": proof.proof_id})["Item"]
        self.assertEqual(stored["status"], "settled")
        self.assertEqual(stored["tx_ref"], result.tx_ref)

    def test_reverification_returns_recorded_result_without_double_settling(self):
        proof = signed_proof(self.account, self.challenge)
        first = self.verifier.verify(proof, self.challenge)

        with self.assertLogs("leasestore.settlement", level="INFO") as logs:
            second = self.verifier.verify(proof, self.challenge)
            self.verifier.verify(signed_proof(self.account, self.challenge), self.challenge)

        self.assertTrue(second.settled)
        self.assertTrue(second.replayed)
        self.assertEqual(second.tx_ref, first.tx_ref)
        self.assertEqual(sum("payment settled" in line for line in logs.output), 1)

    def test_pending_claim_is_payment_required(self):
        proof = signed_proof(self.account, self.challenge)
        self.table.put_item(Item={"proof_id": proof.proof_id, "status": "pending"})

        with self.assertRaises(PaymentRequiredError):
            self.verifier.verify(proof, self.challenge)

    def test_mock_mode_without_settlement_log_is_refused(self):
        with self.assertRaisesRegex(ValueError, "settlement log"):
            SettlementVerifier(self.settings.payment)


class FacilitatorSettlementTests(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings(PAYMENT_SETTLEMENT_MODE="facilitator", FACILITATOR_URL="https://facilitator.test")
        issuer = ChallengeIssuer(self.settings.payment, pricing_policy_from_settings(self.settings.pricing))
        self.challenge = issuer.issue("/upload", "Upload")
        self.account = Account.create()
        self.table = FakeDynamoTable(["proof_id"])
        self.requests = []

    def _verifier(self, handler):
        def recording_handler(request):
            self.requests.append((request.url.path, json.loads(request.content)))
            return handler(request)

        http_client = httpx.Client(transport=httpx.MockTransport(recording_handler))
        facilitator = FacilitatorClient("https://facilitator.test", http_client=http_client)
        return SettlementVerifier(self.settings.payment, facilitator=facilitator, settlement_log=SettlementLog(self.table))

    def test_verify_then_settle(self):
        def handler(request):
            if request.url.path == "/verify":
                return httpx.Response(200, json={"isValid": True, "payer": self.account.address})
            return httpx.Response(200, json={"success": True, "transaction": "0xfeed", "network": "eip155:324705682"})

        proof = signed_proof(self.account, self.challenge)
        result = self._verifier(handler).verify(proof, self.challenge)

        self.assertTrue(result.settled)
        self.assertEqual(result.tx_ref, "0xfeed")
        self.assertEqual([path for path, _body in self.requests], ["/verify", "/settle"])
        body = self.requests[1][1]
        self.assertEqual(body["x402Version"], 2)
        self.assertEqual(body["paymentRequirements"], self.challenge.requirements())
        self.assertEqual(body["paymentPayload"], proof.payload)

    def test_invalid_verdict_is_not_settled_and_releases_claim(self):
        def handler(request):
            del request
            return httpx.Response(200, json={"isValid": False, "invalidReason": "insufficient_funds"})

        proof = signed_proof(self.account, self.challenge)
        result = self._verifier(handler).verify(proof, self.challenge)

        self.assertFalse(result.settled)
        self.assertEqual(result.reason, "insufficient_funds")
        self.assertEqual(self.table.items, {})

    def test_transport_error_is_retryable_upstream_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        proof = signed_proof(self.account, self.challenge)
        with self.assertRaises(UpstreamError) as ctx:
            self._verifier(handler).verify(proof, self.challenge)

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.table.items, {})

    def test_facilitator_5xx_is_upstream_failure(self):
        def handler(request):
            del request
            return httpx.Response(503, text="unavailable")

        with self.assertRaises(UpstreamError):
            self._verifier(handler).verify(signed_proof(self.account, self.challenge), self.challenge)

    def test_settle_without_transaction_is_upstream_failure(self):
        def handler(request):
            if request.url.path == "/verify":
                return httpx.Response(200, json={"isValid": True})
            return httpx.Response(200, json={"success": True})

        with self.assertRaises(UpstreamError):
            self._verifier(handler).verify(signed_proof(self.account, self.challenge), self.challenge)


if __name__ == "__main__":
    unittest.main()
