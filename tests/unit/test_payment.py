import base64
import json
import unittest

from eth_account import Account

from fakes import RECEIVING_ADDRESS, TOKEN_ADDRESS, make_settings
from leasestore.client import StorageClient
from leasestore.errors import BadRequestError
from leasestore.payment import (
    ChallengeIssuer,
    chain_id_from_network,
    decode_json_base64,
    find_payment_header,
    flat_pricing,
    parse_payment_proof,
    payment_required_headers,
    payment_response_headers,
    per_megabyte_pricing,
    pricing_policy_from_settings,
)


class PricingTests(unittest.TestCase):
    def test_flat_pricing_ignores_size(self):
        policy = flat_pricing(20000)

        self.assertEqual(policy(None), 20000)
        self.assertEqual(policy(5), 20000)
        self.assertEqual(policy(5_000_000_000), 20000)

    def test_per_megabyte_pricing_charges_started_megabytes(self):
        policy = per_megabyte_pricing(1000, 10)

        self.assertEqual(policy(None), 1000)
        self.assertEqual(policy(1), 1010)
        self.assertEqual(policy(1_000_000), 1010)
        self.assertEqual(policy(1_000_001), 1020)

    def test_policy_from_settings(self):
        settings = make_settings(PRICING_MODE="per_megabyte", DEFAULT_PRICE="500", PRICE_PER_MEGABYTE="7")

        policy = pricing_policy_from_settings(settings.pricing)

        self.assertEqual(policy(2_500_000), 500 + 3 * 7)

    def test_chain_id_from_network(self):
        self.assertEqual(chain_id_from_network("eip155:324705682"), 324705682)
        with self.assertRaises(BadRequestError):
            chain_id_from_network("solana:mainnet")


class ChallengeIssuerTests(unittest.TestCase):
    def test_issue_uses_configuration(self):
        settings = make_settings()
        issuer = ChallengeIssuer(settings.payment, pricing_policy_from_settings(settings.pricing))

        challenge = issuer.issue(resource="/upload", description="Upload a file", size_bytes=5)
        requirements = challenge.requirements()

        self.assertEqual(requirements["scheme"], "exact")
        self.assertEqual(requirements["network"], "eip155:324705682")
        self.assertEqual(requirements["amount"], "20000")
        self.assertEqual(requirements["payTo"], RECEIVING_ADDRESS.lower())
        self.assertEqual(requirements["asset"], TOKEN_ADDRESS.lower())
        self.assertEqual(requirements["maxTimeoutSeconds"], 300)
        self.assertEqual(requirements["extra"], {"name": "Bridged USDC (SKALE Bridge)", "version": "2"})
        self.assertEqual(challenge.resource_info(), {"url": "/upload", "description": "Upload a file"})
        self.assertEqual(challenge.chain_id, 324705682)

    def test_issue_is_deterministic_for_same_request(self):
        settings = make_settings(PRICING_MODE="per_megabyte", PRICE_PER_MEGABYTE="3")
        issuer = ChallengeIssuer(settings.payment, pricing_policy_from_settings(settings.pricing))

        first = issuer.issue("/upload", "Upload", size_bytes=3_000_000)
        second = issuer.issue("/upload", "Upload", size_bytes=3_000_000)

        self.assertEqual(first, second)


class HeaderCodecTests(unittest.TestCase):
    def test_payment_required_header_carries_accepts(self):
        requirements = {"scheme": "exact", "amount": "1"}

        headers = payment_required_headers(requirements, {"url": "/upload", "description": ""})

        decoded = decode_json_base64(headers["PAYMENT-REQUIRED"])
        self.assertEqual(decoded["x402Version"], 2)
        self.assertEqual(decoded["accepts"], [requirements])

    def test_payment_response_header(self):
        headers = payment_response_headers("0xabc", "eip155:1", "0x" + "1" * 40)

        decoded = decode_json_base64(headers["PAYMENT-RESPONSE"])
        self.assertEqual(decoded, {"success": True, "transaction": "0xabc", "network": "eip155:1", "payer": "0x" + "1" * 40})

    def test_find_payment_header_prefers_payment_signature(self):
        self.assertEqual(find_payment_header({"payment-signature": "a", "x-payment": "b"}), "a")
        self.assertEqual(find_payment_header({"x-payment": "b"}), "b")
        self.assertIsNone(find_payment_header({"payment-signature": "  "}))

    def test_decode_json_base64_rejects_garbage(self):
        with self.assertRaises(BadRequestError):
            decode_json_base64("%%%")
        with self.assertRaises(BadRequestError):
            decode_json_base64(base64.b64encode(b"[1, 2]").decode("ascii"))


class ParsePaymentProofTests(unittest.TestCase):
    def setUp(self):
        settings = make_settings()
        issuer = ChallengeIssuer(settings.payment, pricing_policy_from_settings(settings.pricing))
        self.challenge = issuer.issue("/upload", "Upload")
        self.account = Account.create()
        self.client = StorageClient("http://storage.test", self.account.key)

    def test_parse_client_built_proof(self):
        header = self.client.build_payment_header(self.challenge.requirements(), self.challenge.resource_info())

        proof = parse_payment_proof(header)
        authorization = proof.authorization

        self.assertEqual(authorization.from_address, self.account.address.lower())
        self.assertEqual(authorization.to_address, RECEIVING_ADDRESS.lower())
        self.assertEqual(authorization.value, 20000)
        self.assertEqual(authorization.network, "eip155:324705682")
        self.assertEqual(authorization.asset, TOKEN_ADDRESS.lower())
        self.assertEqual(authorization.domain_name, "Bridged USDC (SKALE Bridge)")
        self.assertEqual(authorization.domain_version, "2")
        self.assertTrue(proof.proof_id.endswith(authorization.nonce))

    def test_parse_accepts_raw_json(self):
        header = self.client.build_payment_header(self.challenge.requirements())
        raw_json = base64.b64decode(header).decode("utf-8")

        proof = parse_payment_proof(raw_json)

        self.assertEqual(proof.authorization.value, 20000)

    def test_missing_authorization_is_rejected(self):
        header = base64.b64encode(json.dumps({"x402Version": 2, "payload": {}}).encode("utf-8")).decode("ascii")

        with self.assertRaises(BadRequestError):
            parse_payment_proof(header)

    def test_short_signature_is_rejected(self):
        header = self.client.build_payment_header(self.challenge.requirements())
        payload = decode_json_base64(header)
        payload["payload"]["signature"] = "0x1234"
        tampered = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

        with self.assertRaises(BadRequestError):
            parse_payment_proof(tampered)


if __name__ == "__main__":
    unittest.main()
