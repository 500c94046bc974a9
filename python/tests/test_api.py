"""
API endpoint tests for the ATS Verify FastAPI server

Runs the real application against an in-memory SQLite database through
dependency overrides. Tests cover risk analysis, risk profile management,
IMEI verification, health, error format and API key security.
"""

import uuid
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api import server
from database.connection import create_test_provider, get_db, get_db_provider


@pytest.fixture
def db_provider(engine):
    provider = create_test_provider(engine=engine)
    provider.init()
    return provider


@pytest.fixture
def client(db_provider, config):
    """Create test client with the SQLite provider and default config."""
    server.app.dependency_overrides[get_db] = db_provider.get_session
    server.app.dependency_overrides[get_db_provider] = lambda: db_provider
    server.app.dependency_overrides[server.get_config_instance] = lambda: config

    with patch.object(server, 'API_KEY', ''):
        yield TestClient(server.app)

    server.app.dependency_overrides.clear()


def upload(client, data: bytes, headers=None):
    return client.post(
        "/api/v1/risks/analyze",
        files={"file": ("applications.csv", data, "text/csv")},
        headers=headers or {},
    )


class TestRiskAnalysis:
    """Tests for POST /api/v1/risks/analyze."""

    def test_analyze_upload(self, client, applications_csv):
        response = upload(client, applications_csv, headers={"X-Actor-ID": "analyst-7"})
        assert response.status_code == 200

        data = response.json()
        assert data['document_reuse'] == [
            {'document_number': 'D1', 'identifiers': ['A', 'B'], 'count': 2}
        ]
        assert data['frequency'] == [{'identifier': 'A', 'count': 5, 'tier': 'yellow'}]
        assert data['flip_flop'] == []
        assert data['summary']['total_rows'] == 6
        assert data['summary']['auto_flagged'] == 3
        assert data['summary']['archived'] == 6
        assert data['processing_time_ms'] >= 0

    def test_auto_flags_persisted(self, client, applications_csv):
        upload(client, applications_csv, headers={"X-Actor-ID": "analyst-7"})

        response = client.get("/api/v1/risks/A")
        assert response.status_code == 200
        profile = response.json()
        assert profile['risk_level'] == 'yellow'
        assert profile['flagged_by'] == 'analyst-7'
        assert profile['comment'] == 'auto-flagged: document D1 used by 2 different IIN/BINs'

    def test_semicolon_upload(self, client):
        data = "\ufeffIIN;Doc;Status\nA;D1;ok\nB;D1;no\n".encode('utf-8')
        response = upload(client, data)

        assert response.status_code == 200
        assert response.json()['summary']['delimiter'] == ';'

    def test_missing_column(self, client):
        response = upload(client, b"iin,status\nA,ok\n")
        assert response.status_code == 400

        error = response.json()['error']
        assert error['code'] == 'MISSING_COLUMN'
        assert error['field'] == 'document'
        assert 'doc, document, doc_number, document_number' in error['message']
        assert error['suggestion']
        assert 'timestamp' in error

    def test_no_valid_rows(self, client):
        response = upload(client, b"iin,doc,status\n,D1,ok\n")
        assert response.status_code == 400
        assert response.json()['error']['code'] == 'NO_VALID_ROWS'

    def test_empty_file(self, client):
        response = upload(client, b"")
        assert response.status_code == 400
        assert response.json()['error']['code'] == 'EMPTY_HEADER'

    def test_binary_upload_rejected(self, client):
        response = client.post(
            "/api/v1/risks/analyze",
            files={"file": ("photo.png", b"\x89PNG", "image/png")},
        )
        assert response.status_code == 400
        assert response.json()['error']['code'] == 'HTTP_400'

    def test_upload_too_large(self, client, config):
        config.upload.max_upload_size_mb = 1
        data = b"iin,doc,status\n" + b"A,D1,ok\n" * (1024 * 1024 // 8 + 10)

        response = upload(client, data)
        assert response.status_code == 413

    def test_reports(self, client, applications_csv):
        upload(client, applications_csv)

        response = client.get("/api/v1/risks/reports")
        assert response.status_code == 200

        data = response.json()
        assert data['total_archived'] == 6
        assert [(u['document_number'], u['usage_count']) for u in data['document_usage']] == [
            ('D2', 4), ('D1', 2)
        ]
        assert data['document_reuse'][0]['identifiers'] == ['A', 'B']
        assert data['identifier_frequency'] == []
        assert data['flip_flop'] == []


class TestRiskProfiles:
    """Tests for risk profile management endpoints."""

    def test_flag_and_get(self, client):
        response = client.post(
            "/api/v1/risks",
            json={"iin_bin": " 123456789012 ", "risk_level": "red", "comment": "fraud ring"},
            headers={"X-Actor-ID": "analyst"},
        )
        assert response.status_code == 200
        profile = response.json()
        assert profile['iin_bin'] == '123456789012'
        assert profile['risk_level'] == 'red'
        assert profile['flagged_by'] == 'analyst'
        uuid.UUID(profile['id'])

        response = client.get("/api/v1/risks/123456789012")
        assert response.status_code == 200
        assert response.json()['comment'] == 'fraud ring'

    def test_reflag_overwrites(self, client):
        first = client.post("/api/v1/risks", json={"iin_bin": "A", "risk_level": "red"}).json()
        second = client.post("/api/v1/risks", json={"iin_bin": "A", "risk_level": "green"}).json()

        assert second['id'] == first['id']
        assert second['risk_level'] == 'green'
        assert client.get("/api/v1/risks").json()['total'] == 1

    def test_blank_identifier_rejected(self, client):
        response = client.post("/api/v1/risks", json={"iin_bin": "   ", "risk_level": "red"})
        assert response.status_code == 422

    def test_invalid_level_rejected(self, client):
        response = client.post("/api/v1/risks", json={"iin_bin": "A", "risk_level": "purple"})
        assert response.status_code == 422
        error = response.json()['error']
        assert error['code'] == 'VALIDATION_ERROR'
        assert error['field'] == 'risk_level'

    def test_get_unknown(self, client):
        response = client.get("/api/v1/risks/nobody")
        assert response.status_code == 404
        assert response.json()['error']['code'] == 'NOT_FOUND'

    def test_list_with_filter(self, client):
        client.post("/api/v1/risks", json={"iin_bin": "A", "risk_level": "red"})
        client.post("/api/v1/risks", json={"iin_bin": "B", "risk_level": "yellow"})

        data = client.get("/api/v1/risks").json()
        assert data['total'] == 2

        data = client.get("/api/v1/risks", params={"risk_level": "yellow"}).json()
        assert [p['iin_bin'] for p in data['profiles']] == ['B']

    def test_total_counts_beyond_page(self, client):
        for identifier, level in (("A", "red"), ("B", "red"), ("C", "red"), ("D", "green")):
            client.post("/api/v1/risks", json={"iin_bin": identifier, "risk_level": level})

        data = client.get("/api/v1/risks", params={"offset": 1, "limit": 2}).json()
        assert len(data['profiles']) == 2
        assert data['total'] == 4

        data = client.get("/api/v1/risks", params={"risk_level": "red", "limit": 1}).json()
        assert len(data['profiles']) == 1
        assert data['total'] == 3

    def test_delete(self, client):
        profile = client.post("/api/v1/risks", json={"iin_bin": "A", "risk_level": "red"}).json()

        response = client.delete(f"/api/v1/risks/{profile['id']}")
        assert response.status_code == 200
        assert response.json() == {'deleted': True, 'id': profile['id']}

        assert client.get("/api/v1/risks/A").status_code == 404

        response = client.delete(f"/api/v1/risks/{profile['id']}")
        assert response.status_code == 404

    def test_delete_invalid_id(self, client):
        assert client.delete("/api/v1/risks/not-a-uuid").status_code == 422


class TestImeiVerification:
    """Tests for POST /api/v1/imei/analyze."""

    CSV = b"id,IMEI1,imei2\n1,123456789012345,99999999999999\n"

    def test_declaration_text_field(self, client):
        response = client.post(
            "/api/v1/imei/analyze",
            files={"csv_file": ("devices.csv", self.CSV, "text/csv")},
            data={"declaration_text": "Graph 31: 123456789012345"},
        )
        assert response.status_code == 200

        data = response.json()
        assert data['total_imeis'] == 2
        assert data['total_found'] == 1
        assert data['total_missing'] == 1
        assert data['results'][0] == {
            'csv_line': 2,
            'column': 'IMEI1',
            'imei_14': '12345678901234',
            'matched_imei': '123456789012345',
            'found': True,
        }
        assert [s['column'] for s in data['column_stats']] == ['IMEI1', 'imei2']

    def test_declaration_file(self, client):
        response = client.post(
            "/api/v1/imei/analyze",
            files={
                "csv_file": ("devices.csv", self.CSV, "text/csv"),
                "declaration": ("declaration.txt", b"abc12345678901234xyz", "text/plain"),
            },
        )
        assert response.status_code == 200
        result = response.json()['results'][0]
        assert result['found'] is True
        assert result['matched_imei'] == '(prefix matched in text)'

    def test_text_report_download(self, client):
        response = client.post(
            "/api/v1/imei/analyze",
            params={"format": "text"},
            files={"csv_file": ("devices.csv", self.CSV, "text/csv")},
            data={"declaration_text": "Graph 31: 123456789012345"},
        )
        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/plain')
        assert 'imei_report.txt' in response.headers['content-disposition']
        assert "IMEI VERIFICATION REPORT" in response.text
        assert "Line 2 [imei2]: 99999999999999 (Missing)" in response.text

    def test_invalid_format(self, client):
        response = client.post(
            "/api/v1/imei/analyze",
            params={"format": "pdf"},
            files={"csv_file": ("devices.csv", self.CSV, "text/csv")},
            data={"declaration_text": "x"},
        )
        assert response.status_code == 422

    def test_missing_declaration(self, client):
        response = client.post(
            "/api/v1/imei/analyze",
            files={"csv_file": ("devices.csv", self.CSV, "text/csv")},
        )
        assert response.status_code == 400

    def test_no_imei_columns(self, client):
        response = client.post(
            "/api/v1/imei/analyze",
            files={"csv_file": ("devices.csv", b"id,serial\n1,2\n", "text/csv")},
            data={"declaration_text": "x"},
        )
        assert response.status_code == 400
        assert response.json()['error']['code'] == 'NO_IMEI_COLUMNS'


class TestHealth:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200

        data = response.json()
        assert data['status'] == 'healthy'
        assert data['database'] == 'connected'
        assert data['algorithm_version'] == '1.0.0'

    def test_health_degraded(self, client):
        provider = MagicMock()
        provider.health_check.return_value = False
        server.app.dependency_overrides[get_db_provider] = lambda: provider

        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()['status'] == 'degraded'
        assert response.json()['database'] == 'unavailable'

    def test_request_id_header(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})
        assert response.headers['X-Request-ID'] == 'req-42'
        assert 'X-Processing-Time-MS' in response.headers


class TestSecurity:
    """Tests for API key authentication."""

    def test_missing_api_key(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.get("/api/v1/risks")
        assert response.status_code == 401
        assert response.json()['error']['code'] == 'HTTP_401'

    def test_invalid_api_key(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.get("/api/v1/risks", headers={"X-API-Key": "wrong"})
        assert response.status_code == 403

    def test_valid_api_key(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.get("/api/v1/risks", headers={"X-API-Key": "secret"})
        assert response.status_code == 200

    def test_health_is_public(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.get("/api/v1/health")
        assert response.status_code == 200

    def test_actor_header_sanitized(self, client):
        response = client.post(
            "/api/v1/risks",
            json={"iin_bin": "A", "risk_level": "red"},
            headers={"X-Actor-ID": "eve\tadmin"},
        )
        assert response.json()['flagged_by'] == 'eve admin'


class TestErrorHandling:
    """Tests for the standardized error body."""

    def test_unexpected_error_hides_details(self, client):
        service = MagicMock()
        service.get_analytics_reports.side_effect = RuntimeError("secret connection string")
        server.app.dependency_overrides[server.get_risk_service] = lambda: service

        response = TestClient(server.app, raise_server_exceptions=False).get("/api/v1/risks/reports")

        assert response.status_code == 500
        error = response.json()['error']
        assert error['code'] == 'INTERNAL_ERROR'
        assert 'secret' not in error['message']

    def test_docs_available(self, client):
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/risks/analyze" in response.json()['paths']
