"""HTTP-level tests: routing, auth, error envelope and the happy path end to end"""
import pytest
import pytest_asyncio
from decimal import Decimal

from fastapi import Depends
from httpx import ASGITransport, AsyncClient

from app.database import get_db
from app.main import app
from app.routers.auth import get_workflow
from app.services.auth import AuthService
from app.services.collaborators import DatabaseIdentityService


def auth_header(user) -> dict:
    token = AuthService.create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, make_workflow):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    def override_get_workflow(db=Depends(get_db)):
        return make_workflow(db)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_workflow] = override_get_workflow

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


class TestHealthAndAuth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_me_requires_token(self, client, users):
        response = await client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_FAILED"

        response = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_me_returns_user(self, client, users):
        response = await client.get("/api/auth/me", headers=auth_header(users["buyer"]))

        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "buyer@example.com"
        assert body["verification_status"] == "VERIFIED"

    @pytest.mark.asyncio
    async def test_admin_routes_reject_users(self, client, users):
        response = await client.post(
            "/api/lands",
            json={"survey_number": "1", "village": "V", "taluka": "T", "district": "Mysuru",
                  "state": "Karnataka", "pincode": "571105", "land_type": "AGRICULTURAL"},
            headers=auth_header(users["seller"]),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "UNAUTHORIZED_ACTOR"


class TestErrorEnvelope:

    @pytest.mark.asyncio
    async def test_self_acceptance_envelope(self, client, users, listed_land):
        buyer = auth_header(users["buyer"])
        chat = (await client.post("/api/negotiations", json={"land_id": listed_land.id}, headers=buyer)).json()
        await client.post(f"/api/negotiations/{chat['id']}/offer", json={"amount": "500000"}, headers=buyer)

        response = await client.post(f"/api/negotiations/{chat['id']}/accept", headers=buyer)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "SELF_ACCEPTANCE_DENIED"
        assert body["recovery"] == "resubmit"
        assert body["path"] == f"/api/negotiations/{chat['id']}/accept"

    @pytest.mark.asyncio
    async def test_unknown_verification_code(self, client):
        response = await client.get("/api/transactions/verify/TXNNOPE")

        assert response.status_code == 404
        assert response.json()["recovery"] == "abort"

    @pytest.mark.asyncio
    async def test_request_validation(self, client, users, listed_land):
        buyer = auth_header(users["buyer"])
        chat = (await client.post("/api/negotiations", json={"land_id": listed_land.id}, headers=buyer)).json()

        response = await client.post(f"/api/negotiations/{chat['id']}/offer", json={"amount": "-5"}, headers=buyer)

        assert response.status_code == 422


class TestEndToEnd:
    """Negotiate, transact, review and verify over HTTP"""

    @pytest.mark.asyncio
    async def test_sale_through_the_api(self, client, users, listed_land):
        buyer = auth_header(users["buyer"])
        seller = auth_header(users["seller"])
        admin = auth_header(users["admin"])

        response = await client.get("/api/lands/marketplace", params={"district": "Mysuru"})
        assert response.json()["total"] == 1

        chat = (await client.post("/api/negotiations", json={"land_id": listed_land.id}, headers=buyer)).json()
        assert chat["status"] == "ACTIVE"

        await client.post(f"/api/negotiations/{chat['id']}/offer", json={"amount": "500000"}, headers=buyer)
        await client.post(f"/api/negotiations/{chat['id']}/counter-offer", json={"amount": "550000"}, headers=seller)
        response = await client.post(f"/api/negotiations/{chat['id']}/accept", headers=buyer)
        assert response.json()["status"] == "DEAL_AGREED"

        response = await client.post("/api/transactions", json={"chat_id": chat["id"]}, headers=buyer)
        assert response.status_code == 201
        transaction = response.json()
        assert Decimal(transaction["escrow_amount"]) == Decimal("55000")
        assert transaction["status"] == "INITIATED"

        response = await client.post(
            f"/api/transactions/{transaction['id']}/documents",
            files=[("files", ("deed.pdf", b"%PDF-1.4 sale deed", "application/pdf"))],
            data={"document_type": "SALE_AGREEMENT"},
            headers=buyer,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "DOCUMENTS_SUBMITTED"

        response = await client.get(f"/api/transactions/{transaction['id']}", headers=seller)
        documents = response.json()["documents"]
        assert documents[0]["document_type"] == "SALE_AGREEMENT"
        assert documents[0]["mime_type"] == "application/pdf"

        response = await client.get("/api/transactions/pending-review", headers=admin)
        assert [t["id"] for t in response.json()] == [transaction["id"]]

        await client.post(f"/api/transactions/{transaction['id']}/start-review", headers=admin)
        response = await client.post(
            f"/api/transactions/{transaction['id']}/review",
            json={"verdict": "APPROVE", "comments": "Verified"},
            headers=admin,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"

        response = await client.get(f"/api/transactions/verify/{transaction['transaction_code']}")
        assert response.json()["owner_id"] == users["buyer"].id

        response = await client.get(f"/api/lands/{listed_land.id}/history")
        assert [r["owner_id"] for r in response.json()] == [users["seller"].id, users["buyer"].id]

        response = await client.get("/api/lands/mine", headers=buyer)
        assert [l["id"] for l in response.json()] == [listed_land.id]

    @pytest.mark.asyncio
    async def test_empty_upload_rejected(self, client, users, chat_transaction):
        response = await client.post(
            f"/api/transactions/{chat_transaction.id}/documents",
            files=[("files", ("deed.pdf", b"", "application/pdf"))],
            headers=auth_header(users["buyer"]),
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_admin_verifies_user(self, client, users):
        response = await client.post(
            f"/api/users/{users['unverified'].id}/verify",
            json={"approve": True},
            headers=auth_header(users["admin"]),
        )

        assert response.status_code == 200
        assert response.json()["verification_status"] == "VERIFIED"


class TestAdminStatistics:

    @pytest.mark.asyncio
    async def test_statistics_are_admin_only(self, client, users):
        for path in ("/api/negotiations/admin/statistics", "/api/transactions/admin/statistics"):
            response = await client.get(path, headers=auth_header(users["buyer"]))
            assert response.status_code == 403
            assert response.json()["error"] == "UNAUTHORIZED_ACTOR"

    @pytest.mark.asyncio
    async def test_statistics_for_admin(self, client, users, agreed_chat):
        response = await client.get("/api/negotiations/admin/statistics", headers=auth_header(users["admin"]))
        assert response.status_code == 200
        assert response.json()["deals_agreed"] == 1

        response = await client.get(
            "/api/transactions/admin/statistics", params={"year": 2024}, headers=auth_header(users["admin"])
        )
        assert response.status_code == 200
        body = response.json()
        assert body["year"] == 2024
        assert body["statistics"]["total_transactions"] == 0
        assert len(body["monthly_stats"]) == 12


class GrantingIdentityService(DatabaseIdentityService):
    """Treats a fixed set of user ids as administrators"""

    def __init__(self, db, admin_ids):
        super().__init__(db)
        self.admin_ids = set(admin_ids)

    async def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids


class TestAdminCapability:

    @pytest.mark.asyncio
    async def test_admin_routes_follow_the_identity_service(self, client, users, make_workflow):
        def override_get_workflow(db=Depends(get_db)):
            workflow = make_workflow(db)
            workflow.identity = GrantingIdentityService(db, {users["seller"].id})
            return workflow

        app.dependency_overrides[get_workflow] = override_get_workflow

        seller = await client.get("/api/transactions/pending-review", headers=auth_header(users["seller"]))
        admin = await client.get("/api/transactions/pending-review", headers=auth_header(users["admin"]))

        assert seller.status_code == 200
        assert seller.json() == []
        assert admin.status_code == 403
