"""Tests for the PostgREST-backed profile repository."""

from __future__ import annotations

import json

import httpx
import pytest

from authsync.service.profiles import RestProfileRepository
from authsync.storage.errors import ConstraintViolation, RecordNotFound, StorageUnavailable
from authsync.storage.models import Profile, UserRole

ROW = {
    "id": "u1",
    "email": "a@x.com",
    "role": "user",
    "status": "active",
    "created_at": "2024-05-01T12:00:00+00:00",
    "updated_at": "2024-05-01T12:00:00+00:00",
    "company": "Acme",
}


def make_repo(handler, token=None) -> tuple[RestProfileRepository, list]:
    seen = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    repo = RestProfileRepository(
        "https://db.example.test",
        "anon-key",
        table="profiles",
        transport=httpx.MockTransport(record),
        access_token_provider=(lambda: token) if token else None,
    )
    return repo, seen


class TestReads:
    async def test_get_by_id_filters_on_id(self):
        repo, seen = make_repo(lambda request: httpx.Response(200, json=[ROW]), token="user-token")
        profile = await repo.get_by_id("u1")

        assert profile.company == "Acme"
        request = seen[0]
        assert request.url.path == "/rest/v1/profiles"
        assert request.url.params["id"] == "eq.u1"
        assert request.headers["Authorization"] == "Bearer user-token"
        assert request.headers["apikey"] == "anon-key"
        await repo.close()

    async def test_missing_row_is_none(self):
        repo, _ = make_repo(lambda request: httpx.Response(200, json=[]))
        assert await repo.get_by_id("u1") is None

    async def test_server_error_is_storage_unavailable(self):
        repo, _ = make_repo(lambda request: httpx.Response(503))
        with pytest.raises(StorageUnavailable):
            await repo.get_by_id("u1")

    async def test_network_error_is_storage_unavailable(self):
        def refuse(request):
            raise httpx.ReadTimeout("timed out", request=request)

        repo, _ = make_repo(refuse)
        with pytest.raises(StorageUnavailable):
            await repo.get_by_id("u1")


class TestWrites:
    async def test_insert_returns_representation(self):
        repo, seen = make_repo(lambda request: httpx.Response(201, json=[ROW]))
        profile = await repo.insert(Profile(id="u1", email="a@x.com", company="Acme"))

        assert profile.company == "Acme"
        assert seen[0].method == "POST"
        assert seen[0].headers["Prefer"] == "return=representation"
        body = json.loads(seen[0].content)
        assert body["id"] == "u1"
        assert body["role"] == "user"

    async def test_duplicate_insert_is_constraint_violation(self):
        repo, _ = make_repo(
            lambda request: httpx.Response(409, json={"code": "23505", "message": "duplicate key"})
        )
        with pytest.raises(ConstraintViolation) as exc_info:
            await repo.insert(Profile(id="u1", email="a@x.com"))
        assert exc_info.value.detail["code"] == "23505"

    async def test_update_patches_by_id(self):
        updated = dict(ROW, role="admin")
        repo, seen = make_repo(lambda request: httpx.Response(200, json=[updated]))
        profile = await repo.update("u1", {"role": "admin"})

        assert profile.role is UserRole.ADMIN
        assert seen[0].method == "PATCH"
        assert seen[0].url.params["id"] == "eq.u1"
        body = json.loads(seen[0].content)
        assert body["role"] == "admin"
        assert "updated_at" in body

    async def test_update_of_missing_row(self):
        repo, _ = make_repo(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(RecordNotFound):
            await repo.update("nobody", {"company": "Acme"})

    async def test_client_errors_raise(self):
        repo, _ = make_repo(lambda request: httpx.Response(403, json={"message": "rls"}))
        with pytest.raises(httpx.HTTPStatusError):
            await repo.get_by_id("u1")
