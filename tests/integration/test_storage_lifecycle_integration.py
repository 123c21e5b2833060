import base64
import importlib.util
import io
import json
import os
import sys
from pathlib import Path
import unittest
from unittest import mock

import boto3
import httpx
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber
from eth_account import Account
from eth_account.messages import encode_defunct

from fakes import BUCKET_NAME, LEASE_TABLE_NAME, SETTLEMENT_TABLE_NAME, FakeDynamoResource, FakeDynamoTable, base_env, multipart_body
from leasestore import orchestrator as orchestrator_module
from leasestore import settlement as settlement_module
from leasestore.client import StorageClient
from leasestore.payment import decode_json_base64

SERVICES_DIR = Path(__file__).resolve().parents[2] / "services"
REAL_HTTPX_CLIENT = httpx.Client


def load_app_module(service_name: str):
    module_path = SERVICES_DIR / service_name / "app.py"
    module_name = f"{service_name.replace('-', '_')}_app_integration"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Unable to load {service_name} module")
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_name] = module
    module_spec.loader.exec_module(module)
    return module


upload_app = load_app_module("storage-upload")
download_app = load_app_module("storage-download")
delete_app = load_app_module("storage-delete")


def personal_sign(account, message):
    return f"0x{bytes(account.sign_message(encode_defunct(text=message)).signature).hex()}"


class StorageLifecycleIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.lease_table = FakeDynamoTable(["file_key"])
        self.settlement_table = FakeDynamoTable(["proof_id"])
        self.s3_client = boto3.client(
            "s3",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
            aws_session_token="testing",
        )
        self.stubber = Stubber(self.s3_client)
        resource = FakeDynamoResource({LEASE_TABLE_NAME: self.lease_table, SETTLEMENT_TABLE_NAME: self.settlement_table})

        patches = [
            mock.patch.dict(os.environ, base_env(), clear=True),
            mock.patch.object(orchestrator_module.boto3, "resource", return_value=resource),
            mock.patch.object(orchestrator_module.boto3, "client", return_value=self.s3_client),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

        self.account = Account.create()
        self.agent = StorageClient("http://storage.test", self.account.key)

    def _upload_event(self, payment=None):
        body, content_type = multipart_body("backup.tar.gz", b"archive-bytes", "application/gzip")
        headers = {"Content-Type": content_type, "X-Owner-Identity": self.account.address}
        if payment:
            headers["PAYMENT-SIGNATURE"] = payment
        return {
            "httpMethod": "POST",
            "path": "/upload",
            "headers": headers,
            "body": base64.b64encode(body).decode("ascii"),
            "isBase64Encoded": True,
        }

    def _keyed_event(self, method, key, message):
        return {
            "httpMethod": method,
            "path": f"/file/{key}",
            "pathParameters": {"key": key},
            "headers": {
                "X-Owner-Identity": self.account.address,
                "X-Signature": personal_sign(self.account, message),
            },
        }

    def _paid_upload(self):
        unpaid = upload_app.lambda_handler(self._upload_event(), None)
        self.assertEqual(unpaid["statusCode"], 402)
        challenge = decode_json_base64(unpaid["headers"]["PAYMENT-REQUIRED"])
        payment = self.agent.build_payment_header(challenge["accepts"][0], challenge["resource"])
        return upload_app.lambda_handler(self._upload_event(payment=payment), None)

    def test_upload_download_delete_with_stubbed_s3(self):
        self.stubber.add_response(
            "put_object",
            {},
            {"Bucket": BUCKET_NAME, "Key": ANY, "Body": b"archive-bytes", "ContentType": "application/gzip"},
        )
        with self.stubber:
            uploaded = self._paid_upload()
        self.assertEqual(uploaded["statusCode"], 200, uploaded["body"])
        key = json.loads(uploaded["body"])["fileKey"]
        self.assertTrue(key.startswith(f"{self.account.address.lower()}/"))
        self.assertTrue(key.endswith("-backup.tar.gz"))

        self.stubber.add_response(
            "get_object",
            {"Body": StreamingBody(io.BytesIO(b"archive-bytes"), len(b"archive-bytes")), "ContentType": "application/gzip"},
            {"Bucket": BUCKET_NAME, "Key": key},
        )
        with self.stubber:
            downloaded = download_app.lambda_handler(self._keyed_event("GET", key, key), None)
        self.assertEqual(downloaded["statusCode"], 200)
        self.assertEqual(base64.b64decode(downloaded["body"]), b"archive-bytes")
        self.assertEqual(downloaded["headers"]["Content-Type"], "application/gzip")

        self.stubber.add_response("head_object", {"ContentLength": 13}, {"Bucket": BUCKET_NAME, "Key": key})
        self.stubber.add_response("delete_object", {}, {"Bucket": BUCKET_NAME, "Key": key})
        with self.stubber:
            deleted = delete_app.lambda_handler(self._keyed_event("DELETE", key, f"delete:{key}"), None)
        self.assertEqual(deleted["statusCode"], 200)
        self.assertEqual(self.lease_table.items, {})
        self.stubber.assert_no_pending_responses()

    def test_s3_put_failure_leaves_no_lease(self):
        self.stubber.add_client_error(
            "put_object",
            service_error_code="AccessDenied",
            service_message="denied",
            http_status_code=403,
        )

        with self.stubber:
            response = self._paid_upload()

        self.assertEqual(response["statusCode"], 500)
        body = json.loads(response["body"])
        self.assertEqual(body["error"], "upstream_error")
        self.assertEqual(body["details"]["cause"], "denied")
        self.assertEqual(self.lease_table.items, {})

    def test_drifted_blob_is_not_found(self):
        self.stubber.add_response("put_object", {}, {"Bucket": BUCKET_NAME, "Key": ANY, "Body": ANY, "ContentType": ANY})
        with self.stubber:
            key = json.loads(self._paid_upload()["body"])["fileKey"]

        self.stubber.add_client_error(
            "get_object",
            service_error_code="NoSuchKey",
            service_message="missing",
            http_status_code=404,
            expected_params={"Bucket": BUCKET_NAME, "Key": key},
        )
        with self.stubber:
            response = download_app.lambda_handler(self._keyed_event("GET", key, key), None)

        self.assertEqual(response["statusCode"], 404)
        self.assertEqual(self.lease_table.items, {})


class FacilitatorSettlementIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.facilitator_requests = []

        def facilitator(request):
            self.facilitator_requests.append(request.url.path)
            if request.url.path == "/verify":
                return httpx.Response(200, json={"isValid": True})
            return httpx.Response(200, json={"success": True, "transaction": "0xsettled", "network": "eip155:324705682"})

        def client_factory(**kwargs):
            return REAL_HTTPX_CLIENT(transport=httpx.MockTransport(facilitator), **kwargs)

        patcher = mock.patch.object(settlement_module.httpx, "Client", side_effect=client_factory)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.lease_table = FakeDynamoTable(["file_key"])
        self.settlement_table = FakeDynamoTable(["proof_id"])
        self.s3_client = boto3.client(
            "s3",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
            aws_session_token="testing",
        )
        self.stubber = Stubber(self.s3_client)
        resource = FakeDynamoResource({LEASE_TABLE_NAME: self.lease_table, SETTLEMENT_TABLE_NAME: self.settlement_table})
        env = base_env(PAYMENT_SETTLEMENT_MODE="facilitator", FACILITATOR_URL="https://facilitator.test")
        for patcher in (
            mock.patch.dict(os.environ, env, clear=True),
            mock.patch.object(orchestrator_module.boto3, "resource", return_value=resource),
            mock.patch.object(orchestrator_module.boto3, "client", return_value=self.s3_client),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)
        self.account = Account.create()

    def test_upload_settles_through_facilitator(self):
        agent = StorageClient("http://storage.test", self.account.key)
        body, content_type = multipart_body("a.txt", b"abc")
        event = {
            "httpMethod": "POST",
            "path": "/upload",
            "headers": {"Content-Type": content_type, "X-Owner-Identity": self.account.address},
            "body": base64.b64encode(body).decode("ascii"),
            "isBase64Encoded": True,
        }
        unpaid = upload_app.lambda_handler(event, None)
        challenge = decode_json_base64(unpaid["headers"]["PAYMENT-REQUIRED"])
        event["headers"]["PAYMENT-SIGNATURE"] = agent.build_payment_header(challenge["accepts"][0], challenge["resource"])
        self.stubber.add_response("put_object", {}, {"Bucket": BUCKET_NAME, "Key": ANY, "Body": b"abc", "ContentType": "text/plain"})

        with self.stubber:
            response = upload_app.lambda_handler(event, None)

        self.assertEqual(response["statusCode"], 200, response["body"])
        self.assertEqual(self.facilitator_requests, ["/verify", "/settle"])
        settlement = decode_json_base64(response["headers"]["PAYMENT-RESPONSE"])
        self.assertEqual(settlement["transaction"], "0xsettled")


if __name__ == "__main__":
    unittest.main()
