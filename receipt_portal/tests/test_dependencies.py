import unittest
from unittest.mock import patch

from receipt_portal.config import Settings
from receipt_portal.dependencies import create_gateway
from receipt_portal.gateway import BackendGateway
from receipt_portal.records import InMemoryRecordStore, SqlRecordStore
from receipt_portal.storage import InMemoryBlobStore, S3BlobStore
from receipt_portal.supabase_backend import (
    SupabaseAuthenticator,
    SupabaseBlobStore,
    SupabaseRecordStore,
)


class CreateGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def test_in_memory_backends(self):
        gateway = await create_gateway(Settings(use_in_memory_backends=True))
        self.assertIsInstance(gateway, BackendGateway)
        self.assertIsInstance(gateway.records, InMemoryRecordStore)
        self.assertIsInstance(gateway.blobs, InMemoryBlobStore)
        self.assertIn("approve_registration", gateway.records.functions)

    async def test_supabase_requires_url_and_key(self):
        with self.assertRaises(ValueError):
            await create_gateway(
                Settings(
                    use_in_memory_backends=False,
                    supabase_url=None,
                    supabase_anon_key=None,
                )
            )

    @patch("receipt_portal.dependencies.create_supabase_client")
    async def test_supabase_backends(self, mock_create_client):
        mock_create_client.return_value = object()
        gateway = await create_gateway(
            Settings(
                use_in_memory_backends=False,
                supabase_url="https://demo.supabase.co",
                supabase_anon_key="anon",
                database_url=None,
                storage_endpoint=None,
                receipts_bucket="receipts",
            )
        )
        mock_create_client.assert_awaited_once_with("https://demo.supabase.co", "anon")
        self.assertIsInstance(gateway.authenticator, SupabaseAuthenticator)
        self.assertIsInstance(gateway.records, SupabaseRecordStore)
        self.assertIsInstance(gateway.blobs, SupabaseBlobStore)
        self.assertEqual(gateway.blobs.bucket, "receipts")

    @patch("receipt_portal.dependencies.create_supabase_client")
    async def test_direct_database_and_s3_storage(self, mock_create_client):
        mock_create_client.return_value = object()
        gateway = await create_gateway(
            Settings(
                use_in_memory_backends=False,
                receipts_bucket="receipts",
                supabase_url="https://demo.supabase.co",
                supabase_anon_key="anon",
                database_url="sqlite+aiosqlite:///:memory:",
                storage_endpoint="https://demo.supabase.co/storage/v1/s3",
                storage_region="ap-southeast-1",
                storage_access_key_id="key",
                storage_secret_access_key="secret",
                storage_public_url="https://demo.supabase.co/storage/v1/object/public",
            )
        )
        self.assertIsInstance(gateway.records, SqlRecordStore)
        self.assertEqual(gateway.records.identity, gateway.authenticator.get_user)
        self.assertIsInstance(gateway.blobs, S3BlobStore)
        self.assertEqual(
            await gateway.storage.get_receipt_url("user-1/1-a.jpg"),
            "https://demo.supabase.co/storage/v1/object/public/receipts/user-1/1-a.jpg",
        )


class SettingsTests(unittest.TestCase):
    def test_reads_environment(self):
        env = {
            "SUPABASE_URL": "https://env.supabase.co",
            "SUPABASE_ANON_KEY": "env-key",
            "RECEIPTS_BUCKET": "claims-receipts",
            "USE_IN_MEMORY_BACKENDS": "true",
        }
        with patch.dict("os.environ", env, clear=False):
            settings = Settings(_env_file=None)
        self.assertEqual(settings.supabase_url, "https://env.supabase.co")
        self.assertEqual(settings.supabase_anon_key, "env-key")
        self.assertEqual(settings.receipts_bucket, "claims-receipts")
        self.assertTrue(settings.use_in_memory_backends)


if __name__ == "__main__":
    unittest.main()
