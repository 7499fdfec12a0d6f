"""
Tier-1 tests for the prompt template HTTP surface.

The repository dependency is replaced with the in-memory repository so the
routes, error mapping and cache wiring run without a database.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.main import create_app
from app.api.v1.routers.prompt_templates import get_prompt_repository
from app.core.cache import InMemoryPromptCache


BASE = "/prompt-template"


@pytest.fixture
def app(repo):
    application = create_app(cache=InMemoryPromptCache(), init_db=False)
    application.dependency_overrides[get_prompt_repository] = lambda: repo
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def create_template(client, name="T", sections=None, kind="standard"):
    response = await client.post(
        f"{BASE}/templates",
        json={
            "name": name,
            "kind": kind,
            "sections": sections if sections is not None else [
                {"key": 10, "content": "Intro"},
                {"key": 20, "content": "Body"},
            ],
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def strip_time(prompt: str) -> str:
    return prompt.rpartition("\n\n")[0]


# =============================================================================
# Templates
# =============================================================================

class TestTemplateRoutes:

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        created = await create_template(client)
        assert created["version"] == 1
        assert created["created_by"] == "dev-user"

        response = await client.get(f"{BASE}/templates/{created['id']}")
        assert response.status_code == 200
        assert response.json()["sections"][0] == {"key": 10, "content": "Intro"}

    @pytest.mark.asyncio
    async def test_missing_template_is_404(self, client):
        response = await client.get(f"{BASE}/templates/999")
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invalid_kind_is_400(self, client):
        response = await client.post(f"{BASE}/templates", json={"name": "T", "kind": "weird"})
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_malformed_body_is_422(self, client):
        response = await client.post(f"{BASE}/templates", json={"sections": "nope"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_history_and_conflict(self, client):
        created = await create_template(client)
        url = f"{BASE}/templates/{created['id']}"

        response = await client.put(url, json={"name": "Renamed", "expected_version": 1})
        assert response.status_code == 200
        assert response.json()["version"] == 2

        response = await client.put(url, json={"name": "Stale", "expected_version": 1})
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "VERSION_CONFLICT"

        history = (await client.get(f"{url}/history")).json()
        assert [h["version"] for h in history] == [1]

    @pytest.mark.asyncio
    async def test_modules_and_system_default(self, client):
        await create_template(client, name="Tone", kind="module")
        missing = await client.get(f"{BASE}/system-default")
        assert missing.status_code == 404
        assert missing.json()["detail"]["error_code"] == "NOT_FOUND"

        stats = await create_template(client, name="Stats", kind="system-default")

        modules = (await client.get(f"{BASE}/modules")).json()
        assert [m["name"] for m in modules] == ["Tone"]
        assert (await client.get(f"{BASE}/system-default")).json()["id"] == stats["id"]

    @pytest.mark.asyncio
    async def test_delete(self, client):
        created = await create_template(client)
        response = await client.delete(f"{BASE}/templates/{created['id']}")
        assert response.status_code == 204
        assert (await client.get(f"{BASE}/templates/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_insert_section(self, client):
        created = await create_template(client)
        await client.put(f"{BASE}/assignments/C/main", json={"template_id": created["id"]})

        response = await client.post(
            f"{BASE}/templates/{created['id']}/sections",
            json={"content": "New", "insert_after_key": 10},
        )

        assert response.status_code == 201
        assert response.json() == {
            "template_id": created["id"],
            "section_key": 15,
            "version": 2,
            "affected_assignments": 1,
        }
        overrides = (await client.get(f"{BASE}/overrides/C/main")).json()
        assert [(o["section_key"], o["action"]) for o in overrides] == [(15, "remove")]


# =============================================================================
# Assignments, overrides and composition
# =============================================================================

class TestCompositionRoutes:

    @pytest.mark.asyncio
    async def test_assignment_to_unknown_template_is_404(self, client):
        response = await client.put(f"{BASE}/assignments/C/main", json={"template_id": 42})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_compose_with_override(self, client):
        created = await create_template(client)
        await client.put(f"{BASE}/assignments/C/main", json={"template_id": created["id"]})

        response = await client.put(
            f"{BASE}/overrides/C/main/20", json={"action": "modify", "content": "Body v2"}
        )
        assert response.status_code == 200
        assert response.json()["content"] == {"content": "Body v2", "is_module_section": False}

        response = await client.get(f"{BASE}/prompt/C/main")
        assert response.status_code == 200
        assert strip_time(response.json()["prompt"]) == "Intro\n\nBody v2"

    @pytest.mark.asyncio
    async def test_invalid_action_is_400(self, client):
        response = await client.put(f"{BASE}/overrides/C/main/1", json={"action": "replace"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_empty_composition_is_400(self, client):
        response = await client.get(f"{BASE}/prompt/C/main")
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "EMPTY_COMPOSITION"

    @pytest.mark.asyncio
    async def test_rephrase_not_configured(self, client):
        response = await client.get(f"{BASE}/prompt/C/main/rephrase")
        assert response.status_code == 200
        assert response.json()["prompt"] is None

    @pytest.mark.asyncio
    async def test_history_and_revert(self, client):
        url = f"{BASE}/overrides/C/main/1"
        await client.put(url, json={"action": "modify", "content": "v1"})
        await client.put(
            url,
            json={"action": "modify", "content": "v2", "is_module_section": True, "module_id": 3},
        )

        history = (await client.get(f"{url}/history")).json()
        assert [h["content"]["content"] for h in history] == ["v1"]

        response = await client.post(f"{url}/revert")
        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "v1"
        assert body["is_module_section"] is False

        history = (await client.get(f"{url}/history")).json()
        assert history[0]["content"]["is_module_section"] is True

    @pytest.mark.asyncio
    async def test_revert_without_history_is_404(self, client):
        url = f"{BASE}/overrides/C/main/1"
        await client.put(url, json={"action": "modify", "content": "only"})
        response = await client.post(f"{url}/revert")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_override(self, client):
        override = (await client.put(
            f"{BASE}/overrides/C/main/1", json={"action": "add", "content": "x"}
        )).json()
        assert (await client.delete(f"{BASE}/overrides/{override['id']}")).status_code == 204
        assert (await client.delete(f"{BASE}/overrides/{override['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_tenant_configuration(self, client):
        created = await create_template(client)
        await client.put(f"{BASE}/assignments/C/flow2", json={"template_id": created["id"]})
        await client.put(f"{BASE}/overrides/C/flow2/5", json={"action": "remove"})

        config = (await client.get(f"{BASE}/config/C")).json()

        assert config["template_assignments"] == {"flow2": created["id"]}
        assert config["prompt_overrides"]["flow2"]["5"]["action"] == "remove"
        assert config["flow2_key"] == "flow2"
        assert config["flow2_prompt_enabled"] is True


class TestSettingsRoutes:

    @pytest.mark.asyncio
    async def test_topk_lifecycle(self, client):
        response = await client.put(f"{BASE}/topk/C/main", json={"top_k": 5})
        assert response.status_code == 200
        assert response.json()["top_k"] == 5

        listed = (await client.get(f"{BASE}/topk/C")).json()
        assert [(s["flow_key"], s["top_k"]) for s in listed] == [("main", 5)]
        assert (await client.get(f"{BASE}/config/C")).json()["top_k_settings"] == {"main": 5}

        assert (await client.delete(f"{BASE}/topk/C/main")).status_code == 204
        assert (await client.delete(f"{BASE}/topk/C/main")).status_code == 404

    @pytest.mark.asyncio
    async def test_non_positive_top_k_is_400(self, client):
        response = await client.put(f"{BASE}/topk/C/main", json={"top_k": 0})
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_language(self, client):
        assert (await client.get(f"{BASE}/language/C")).status_code == 404

        response = await client.put(f"{BASE}/language/C", json={"language": "french"})
        assert response.status_code == 200
        assert (await client.get(f"{BASE}/language/C")).json()["language"] == "french"
        assert (await client.get(f"{BASE}/config/C")).json()["language"] == "french"

    @pytest.mark.asyncio
    async def test_unsupported_language_is_400(self, client):
        response = await client.put(f"{BASE}/language/C", json={"language": "latin"})
        assert response.status_code == 400


class TestServiceRoutes:

    @pytest.mark.asyncio
    async def test_health_and_request_id(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "abc"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "abc"
        assert "X-Process-Time" in response.headers

    @pytest.mark.asyncio
    async def test_cache_stats(self, client):
        response = await client.get("/health/cache")
        assert response.status_code == 200
        assert "hits" in response.json()["cache"]
