"""
Integration tests for the edge proxy application
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from conftest import ORIGIN, UPSTREAM
from examshare_offline.main import create_app
from examshare_offline.notifications import SYNC_TITLE
from examshare_offline.router import OFFLINE_MESSAGE
from examshare_offline.settings import Settings

SUBMISSION = {"paperId": 7, "fileName": "ans.pdf", "fileContent": "data:application/pdf;base64,AAA="}


def make_settings(database_url):
    return Settings(
        database_url=database_url,
        upstream_url=UPSTREAM,
        public_origin=ORIGIN,
        shell_assets=["/", "/index.html"],
        connectivity_monitor=False,
        store_open_retries=1,
    )


@pytest.fixture
def client(tmp_path, upstream):
    upstream.reply("GET", "/", (200, b"<html>root</html>"))
    upstream.reply("GET", "/index.html", (200, b"<html>shell</html>"))
    app = create_app(make_settings(f"sqlite:///{tmp_path}/app.db"), transport=upstream.transport)
    with TestClient(app) as c:
        yield c


class TestControlApi:
    def test_healthz(self, client):
        response = client.get("/_offline/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["store"] is True

    def test_online_submission(self, client, upstream):
        upstream.reply("POST", "/api/submissions", (201, {"id": 5}))

        response = client.post("/_offline/submissions", json=SUBMISSION)

        assert response.status_code == 201
        assert response.json()["delivered"] is True
        assert client.get("/_offline/pending").json() == []

    def test_rejected_submission_keeps_upstream_status(self, client, upstream):
        upstream.reply("POST", "/api/submissions", (403, {"message": "You don't have permission"}))

        response = client.post("/_offline/submissions", json=SUBMISSION)

        assert response.status_code == 403
        assert response.json()["queued"] is False

    def test_invalid_submission_body(self, client):
        response = client.post("/_offline/submissions", json={"paperId": 7})
        assert response.status_code == 422

    def test_offline_submission_then_sync(self, client, upstream):
        upstream.offline = True
        response = client.post("/_offline/submissions", json=SUBMISSION)
        assert response.status_code == 202
        assert response.json()["queued"] is True
        assert response.json()["recordId"] == 1

        pending = client.get("/_offline/pending").json()
        assert len(pending) == 1
        assert pending[0]["payload"] == SUBMISSION
        assert pending[0]["pendingSync"] is True
        assert client.get("/_offline/healthz").json()["pendingSync"] == ["submit-answer"]

        upstream.offline = False
        upstream.reply("POST", "/api/submissions", 201)
        report = client.post("/_offline/sync/submit-answer").json()

        assert report["delivered"] == [1]
        assert client.get("/_offline/pending").json() == []
        notifications = client.get("/_offline/notifications").json()
        assert [n["title"] for n in notifications] == [SYNC_TITLE]

    def test_persistence_error_is_internal_error(self, client, upstream):
        with client.app.state.runtime.store.engine.begin() as conn:
            conn.execute(text("DROP TABLE store_records"))
        upstream.offline = True

        response = client.post("/_offline/submissions", json=SUBMISSION)

        assert response.status_code == 500
        assert response.json()["detail"].startswith("Offline storage error")

    def test_drop_pending(self, client, upstream):
        upstream.offline = True
        record_id = client.post("/_offline/submissions", json=SUBMISSION).json()["recordId"]

        assert client.delete(f"/_offline/pending/{record_id}").status_code == 204
        assert client.delete(f"/_offline/pending/{record_id}").status_code == 204
        assert client.get("/_offline/pending").json() == []

    def test_unknown_sync_tag(self, client):
        assert client.post("/_offline/sync/refresh-papers").status_code == 404

    def test_unknown_cached_partition(self, client):
        assert client.get("/_offline/cached/pendingSubmissions").status_code == 404

    def test_push(self, client):
        response = client.post("/_offline/push", json={"title": "Graded", "message": "Paper graded"})
        assert response.status_code == 202
        assert response.json() == {"shown": True}
        assert client.get("/_offline/notifications").json()[0]["data"] == {"url": "/"}


class TestProxy:
    def test_api_offline_is_synthesized(self, client, upstream):
        upstream.offline = True
        response = client.get("/api/question-papers")
        assert response.status_code == 503
        assert response.json() == {"error": OFFLINE_MESSAGE}

    def test_api_online_refreshes_cache(self, client, upstream):
        upstream.reply("GET", "/api/question-papers", (200, [{"id": 2, "title": "Statistics"}]))

        response = client.get("/api/question-papers")

        assert response.status_code == 200
        assert response.json() == [{"id": 2, "title": "Statistics"}]
        cached = client.get("/_offline/cached/cachedQuestionPapers").json()
        assert [(c["id"], c["payload"]["title"]) for c in cached] == [(2, "Statistics")]

    def test_navigation_offline_serves_shell(self, client, upstream):
        upstream.offline = True
        response = client.get("/papers/2", headers={"Sec-Fetch-Mode": "navigate"})
        assert response.status_code == 200
        assert response.text == "<html>shell</html>"

    def test_default_offline_miss_is_bad_gateway(self, client, upstream):
        upstream.offline = True
        assert client.get("/robots.txt").status_code == 502


def test_unavailable_store_degrades_to_online_only(tmp_path, upstream):
    app = create_app(make_settings(f"sqlite:///{tmp_path}/no/such/dir/app.db"), transport=upstream.transport)
    with TestClient(app) as client:
        assert client.get("/_offline/healthz").json()["store"] is False

        upstream.reply("POST", "/api/submissions", 201)
        assert client.post("/_offline/submissions", json=SUBMISSION).status_code == 201

        upstream.offline = True
        assert client.post("/_offline/submissions", json=SUBMISSION).status_code == 503
