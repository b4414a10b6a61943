"""
Unit tests for serving.workflow_api module.
"""
import time

import pytest
from fastapi.testclient import TestClient

from api.dependencies import build_services
from conftest import FakeDetector, FakeExtractor
from config.settings import Settings
from data.database import set_db_manager
from serving.workflow_api import workflow_app

PDF_UPLOAD = ("paper.pdf", b"%PDF-1.4 fake", "application/pdf")
TERMINAL = ("completed", "failed", "cancelled")


@pytest.fixture
def services(db_manager):
    config = Settings(
        _env_file=None,
        pipeline_retry_delay=0.0,
        pipeline_max_retries=1,
        enable_database_storage=True
    )
    container = build_services(
        config, db_manager=db_manager, extractor=FakeExtractor(), detector=FakeDetector()
    )
    container.memory_manager.usage_provider = lambda: 0.1
    return container


@pytest.fixture
def client(services, db_manager):
    set_db_manager(db_manager)
    workflow_app.state.services = services
    with TestClient(workflow_app) as test_client:
        yield test_client
    workflow_app.state.services = None
    set_db_manager(None)


def wait_until_finished(client, session_id, attempts=300):
    for _ in range(attempts):
        body = client.get(f"/sessions/{session_id}").json()
        if body['status'] in TERMINAL:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Session {session_id} did not finish")


def process_paper(client):
    """Upload one paper, wait for it and return the session results."""
    response = client.post("/sessions", files=[("files", PDF_UPLOAD)])
    session_id = response.json()['session_id']
    wait_until_finished(client, session_id)
    return client.get(f"/sessions/{session_id}/results").json()


class TestMisc:
    """Tests for root and health endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "render_diagram" in response.json()['endpoints']

    def test_health(self, client):
        body = client.get("/health").json()

        assert body['status'] == "ok"
        assert body['sessions'] == 0
        assert body['memory']['usage'] == pytest.approx(0.1)


class TestSessions:
    """Tests for session endpoints."""

    def test_create_and_complete(self, client):
        response = client.post("/sessions", files=[("files", PDF_UPLOAD)])

        assert response.status_code == 200
        created = response.json()
        assert created['total_files'] == 1

        session = wait_until_finished(client, created['session_id'])
        assert session['status'] == "completed"
        assert session['progress']['percentage'] == 100.0

        results = client.get(f"/sessions/{created['session_id']}/results").json()
        assert results['success'] is True
        assert results['summary']['total_diagrams'] == 1

    def test_unsupported_file(self, client):
        response = client.post("/sessions", files=[("files", ("notes.txt", b"hello", "text/plain"))])

        session = wait_until_finished(client, response.json()['session_id'])

        assert session['status'] == "failed"
        assert session['files'][0]['status'] == "failed"

    def test_unknown_session(self, client):
        assert client.get("/sessions/missing").status_code == 404
        assert client.get("/sessions/missing/results").status_code == 404
        assert client.post("/sessions/missing/cancel").status_code == 404

    def test_cancel_running_session(self, client, services):
        services.pipeline.extractor = FakeExtractor(delay=0.5)

        session_id = client.post("/sessions", files=[("files", PDF_UPLOAD)]).json()['session_id']

        assert client.get(f"/sessions/{session_id}/results").status_code == 409
        assert client.post(f"/sessions/{session_id}/cancel").json()['cancelled'] is True
        assert wait_until_finished(client, session_id)['status'] == "cancelled"

    def test_cleanup(self, client):
        process_paper(client)

        response = client.post("/sessions/cleanup", json={'max_age_hours': 0})

        assert response.json() == {'removed': 1}
        assert client.get("/health").json()['sessions'] == 0


class TestCoordinates:
    """Tests for validation and sanitization endpoints."""

    def test_validate_single(self, client):
        response = client.post("/coordinates/validate", json={
            'coordinates': [{'x1': 100, 'y1': 150, 'x2': 300, 'y2': 250, 'type': 'graph', 'confidence': 0.9}],
            'image_dimensions': {'width': 800, 'height': 600}
        })

        assert response.json()['is_valid'] is True

    def test_validate_out_of_bounds(self, client):
        body = client.post("/coordinates/validate", json={
            'coordinates': [{'x1': -10, 'y1': 150, 'x2': 300, 'y2': 250}],
            'image_dimensions': {'width': 800, 'height': 600}
        }).json()

        assert body['is_valid'] is False
        assert body['errors']

    def test_invalid_dimensions_rejected(self, client):
        response = client.post("/coordinates/validate", json={
            'coordinates': [{'x1': 0, 'y1': 0, 'x2': 10, 'y2': 10}],
            'image_dimensions': {'width': 0, 'height': 600}
        })

        assert response.status_code == 422

    def test_sanitize_storage(self, client):
        body = client.post("/coordinates/sanitize/storage", json={
            'coordinates': {'x1': 100.4, 'y1': 150.6, 'x2': 300.2, 'y2': 250.7},
            'image_dimensions': {'width': 800, 'height': 600}
        }).json()

        sanitized = body['sanitized']
        assert (sanitized['x1'], sanitized['y1'], sanitized['x2'], sanitized['y2']) == (100, 151, 300, 251)

    def test_unknown_profile(self, client):
        response = client.post("/coordinates/sanitize/bogus", json={
            'coordinates': {'x1': 0, 'y1': 0, 'x2': 10, 'y2': 10},
            'image_dimensions': {'width': 800, 'height': 600}
        })

        assert response.status_code == 404


class TestStoredDiagrams:
    """Tests for stored coordinates, manual edits and rendering."""

    def test_get_coordinates(self, client):
        results = process_paper(client)
        question_id = results['results'][0]['coordinate_metadata'][0]['question_id']

        body = client.get(f"/questions/{question_id}/coordinates").json()

        assert body['original_image_dimensions'] == {'width': 800, 'height': 600}
        assert body['diagrams'][0]['coordinates']['x2'] == 300
        assert body['diagrams'][0]['modified_by'] == 'ai'

    def test_unknown_question(self, client):
        assert client.get("/questions/missing/coordinates").status_code == 404

    def test_manual_edit(self, client):
        metadata = process_paper(client)['results'][0]['coordinate_metadata'][0]
        question_id = metadata['question_id']
        diagram_id = metadata['diagrams'][0]['id']

        response = client.put(f"/questions/{question_id}/diagrams/{diagram_id}", json={
            'coordinates': {'x1': 110, 'y1': 160, 'x2': 310, 'y2': 260, 'type': 'graph', 'confidence': 0.9}
        })

        assert response.status_code == 200
        diagram = response.json()['diagram']
        assert diagram['modified_by'] == 'user'
        coords = diagram['coordinates']
        assert (coords['x1'], coords['y1'], coords['x2'], coords['y2']) == (110, 160, 310, 260)

        stored = client.get(f"/questions/{question_id}/coordinates").json()
        assert stored['diagrams'][0]['coordinates']['x1'] == 110
        assert stored['diagrams'][0]['modified_by'] == 'user'

    def test_manual_edit_unknown_diagram(self, client):
        question_id = process_paper(client)['results'][0]['coordinate_metadata'][0]['question_id']

        response = client.put(f"/questions/{question_id}/diagrams/missing", json={
            'coordinates': {'x1': 0, 'y1': 0, 'x2': 100, 'y2': 100}
        })

        assert response.status_code == 404

    def test_render(self, client):
        metadata = process_paper(client)['results'][0]['coordinate_metadata'][0]
        url = f"/questions/{metadata['question_id']}/diagrams/{metadata['diagrams'][0]['id']}/render"

        body = client.post(url, json={}).json()

        assert body['image_data'].startswith("data:image/png;base64,")
        assert body['dimensions'] == {'width': 200, 'height': 100}

    def test_get_and_delete_test(self, client):
        test_id = process_paper(client)['results'][0]['test_id']

        body = client.get(f"/tests/{test_id}").json()
        assert body['document']['filename'] == "paper.pdf"
        assert len(body['questions']) == 1

        assert client.delete(f"/tests/{test_id}").status_code == 200
        assert client.get(f"/tests/{test_id}").status_code == 404
