import unittest

from receipt_portal.errors import AuthError, NotFoundError
from receipt_portal.tests.portal_fixtures import CONDO_ID, EMAIL, PASSWORD, build_gateway, seed_participant


class RegistrationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.gateway = build_gateway()
        seed_participant(self.gateway, user_id="admin-1")
        self.gateway.records.seed(
            "pending_registrations",
            [
                {"id": "r1", "status": "pending", "condo_id": CONDO_ID, "created_at": "2026-02-01T08:00:00"},
                {"id": "r2", "status": "approved", "condo_id": CONDO_ID, "created_at": "2026-02-02T08:00:00"},
                {"id": "r3", "status": "pending", "condo_id": CONDO_ID, "created_at": "2026-02-03T08:00:00"},
            ],
        )
        await self.gateway.auth.sign_in(EMAIL, PASSWORD)

    async def test_pending_registrations_newest_first(self):
        rows = await self.gateway.admin.get_pending_registrations()
        self.assertEqual([row["id"] for row in rows], ["r3", "r1"])
        self.assertEqual(rows[0]["condo"], {"name": "Marina Bay Residences", "tier": "gold"})

    async def test_approve_registration(self):
        row = await self.gateway.admin.approve_registration("r1")
        self.assertEqual(row["status"], "approved")
        self.assertIsNotNone(row["reviewed_at"])
        pending = await self.gateway.admin.get_pending_registrations()
        self.assertEqual([r["id"] for r in pending], ["r3"])

    async def test_approve_unknown_registration(self):
        with self.assertRaises(NotFoundError):
            await self.gateway.admin.approve_registration("missing")

    async def test_approve_denied_for_non_admin(self):
        self.gateway.records.deny("approve_registration", "rpc")
        with self.assertRaises(AuthError):
            await self.gateway.admin.approve_registration("r1")
        self.assertEqual(self.gateway.records.tables["pending_registrations"][0]["status"], "pending")

    async def test_approve_requires_sign_in(self):
        await self.gateway.auth.sign_out()
        with self.assertRaises(AuthError):
            await self.gateway.admin.approve_registration("r1")


class ExportAndDashboardTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = build_gateway()

    async def test_export_claims_csv(self):
        self.gateway.records.seed(
            "claims_with_details",
            [
                {
                    "charge_date": "2026-03-01", "participant_name": "Ana Lim",
                    "condo_name": "Marina", "vehicle_number": "SGX1234A",
                    "operator": "ChargePlus", "amount": 100.0, "rebate_rate": 0.15,
                    "rebate_amount": 15.0, "status": "approved",
                    "created_at": "2026-03-02T00:00:00",
                },
                {
                    "charge_date": "2026-02-01", "participant_name": "Ben Tan",
                    "condo_name": "Orchard", "vehicle_number": "SBA42K",
                    "operator": "SP Mobility", "amount": 45.5, "rebate_rate": 0.2,
                    "rebate_amount": 9.1, "status": "pending",
                    "created_at": "2026-02-02T00:00:00",
                },
            ],
        )
        content = await self.gateway.admin.export_claims_csv({"status": "all"})
        lines = content.split("\n")
        self.assertEqual(
            lines[0],
            "Date,Participant,Condo,Vehicle,Operator,Amount,Rebate Rate,Rebate Amount,Status",
        )
        self.assertEqual(len(lines[0].split(",")), 9)
        self.assertEqual(
            lines[1], "2026-03-01,Ana Lim,Marina,SGX1234A,ChargePlus,100,15%,15,approved"
        )
        self.assertEqual(
            lines[2], "2026-02-01,Ben Tan,Orchard,SBA42K,SP Mobility,45.5,20%,9.1,pending"
        )
        self.assertEqual(len(lines), 3)

    async def test_export_applies_filters(self):
        self.gateway.records.seed(
            "claims_with_details",
            [
                {"status": "pending", "condo_name": "Marina", "created_at": "1"},
                {"status": "approved", "condo_name": "Marina", "created_at": "2"},
            ],
        )
        content = await self.gateway.admin.export_claims_csv({"status": "approved"})
        self.assertEqual(len(content.split("\n")), 2)
        self.assertTrue(content.endswith("approved"))

    async def test_dashboard_stats(self):
        self.gateway.records.seed(
            "claims",
            [
                {"status": "pending", "rebate_amount": 3},
                {"status": "flagged", "rebate_amount": 60},
                {"status": "approved", "rebate_amount": 10},
                {"status": "approved", "rebate_amount": "5"},
            ],
        )
        stats = await self.gateway.admin.get_dashboard_stats()
        self.assertEqual(
            stats.model_dump(by_alias=True),
            {"pending": 1, "flagged": 1, "approved": 2, "totalPayout": 15.0},
        )

    async def test_dashboard_stats_without_claims(self):
        stats = await self.gateway.admin.get_dashboard_stats()
        self.assertEqual((stats.pending, stats.approved, stats.total_payout), (0, 0, 0.0))


class CondoTests(unittest.IsolatedAsyncioTestCase):
    async def test_condos_sorted_by_name(self):
        gateway = build_gateway()
        gateway.records.seed(
            "condos",
            [
                {"id": "2", "name": "Orchard Towers", "tier": "silver", "rebate_rate": 0.1},
                {"id": "1", "name": "Marina Bay Residences", "tier": "gold", "rebate_rate": 0.15},
            ],
        )
        condos = await gateway.condos.get_all()
        self.assertEqual([c["name"] for c in condos], ["Marina Bay Residences", "Orchard Towers"])

    async def test_condo_stats_passthrough(self):
        gateway = build_gateway()
        gateway.records.seed("condo_stats", [{"condo_name": "Marina", "total_claims": 4}])
        self.assertEqual(
            await gateway.condos.get_stats(), [{"condo_name": "Marina", "total_claims": 4}]
        )


if __name__ == "__main__":
    unittest.main()
