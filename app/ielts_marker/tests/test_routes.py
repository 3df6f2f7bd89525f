import io

import pytest

from app.ielts_marker.app import app as flask_app
from app.ielts_marker.models import db
from app.ielts_marker.services.errors import TranscriptionError
from app.ielts_marker.services.feedback_ingest import parse_feedback
from app.ielts_marker.services.gemini_client import GeminiClient
from app.ielts_marker.services.ielts_marker import IeltsMarker
from app.ielts_marker.services.session_registry import SessionRegistry

ESSAY = "People says that technology is very important for kids. People says that it helps."

RAW_FEEDBACK = {
    "overallBand": 6.0,
    "feedback": {
        "taskResponse": {"band": 6.0, "comment": "Addresses the task.", "details": ["Clear position"]},
        "coherenceCohesion": {"band": 6.5, "comment": "Logical.", "details": []},
        "lexicalResource": {"band": 6.0, "comment": "Adequate.", "details": []},
        "grammaticalRangeAccuracy": {"band": 6.5, "comment": "Some errors.", "details": []},
    },
    "improvements": [
        {
            "originalText": "People says that",
            "category": "Grammatical Range and Accuracy",
            "issue": "Subject-verb agreement",
            "description": "Plural subject.",
            "suggestions": ["~~People says that~~ **It is commonly argued that**"],
        },
    ],
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(GeminiClient, "validate_key", lambda self, model=None: self.api_key == "good-key")
    monkeypatch.setattr(
        IeltsMarker,
        "mark",
        lambda self, task_type, question, essay, allocator, image=None: parse_feedback(RAW_FEEDBACK, allocator),
    )
    flask_app.extensions['marker_sessions'] = SessionRegistry()
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        with flask_app.test_client() as test_client:
            yield test_client
        db.session.remove()


def _register_and_login(client, api_key="good-key"):
    client.post('/api/register', json={
        'email': 'teacher@example.com',
        'password': 'secret-pass',
        'name': 'Ms Linh',
    })
    return client.post('/api/login', json={
        'email': 'Teacher@Example.com',
        'password': 'secret-pass',
        'api_key': api_key,
    })


def _start_marking(client, **overrides):
    payload = {
        'student_name': 'Anna Lee',
        'class_name': 'IELTS 6.5',
        'task_type': 2,
        'question': 'Is technology good for children?',
        'essay': ESSAY,
    }
    payload.update(overrides)
    return client.post('/api/marking', json=payload)


def test_register_validates_and_rejects_duplicates(client):
    assert client.post('/api/register', json={'email': 'a@b.c', 'password': 'short'}).status_code == 400

    response = client.post('/api/register', json={'email': 'a@b.c', 'password': 'long-enough'})
    assert response.status_code == 201
    assert response.get_json()['user']['center_name'] == 'GIGI NDC'

    assert client.post('/api/register', json={'email': 'A@B.C', 'password': 'long-enough'}).status_code == 409


def test_login_requires_valid_api_key(client):
    assert _register_and_login(client, api_key="bad-key").status_code == 400
    assert client.get('/api/profile').status_code == 401

    response = client.post('/api/login', json={
        'email': 'teacher@example.com', 'password': 'wrong-pass', 'api_key': 'good-key',
    })
    assert response.status_code == 401

    response = _register_and_login(client)
    assert response.status_code == 200
    assert response.get_json()['user']['name'] == 'Ms Linh'
    assert len(flask_app.extensions['marker_sessions']) == 1


def test_logout_discards_marker_context(client):
    _register_and_login(client)
    client.post('/api/logout')

    assert len(flask_app.extensions['marker_sessions']) == 0
    assert client.get('/api/marking').status_code == 401


def test_new_login_replaces_older_context_for_same_user(client):
    _register_and_login(client)
    assert client.get('/api/profile').status_code == 200

    for _ in range(3):
        other_browser = flask_app.test_client()
        assert _register_and_login(other_browser).status_code == 200

    assert len(flask_app.extensions['marker_sessions']) == 1
    response = client.get('/api/profile')
    assert response.status_code == 401
    assert "Session expired" in response.get_json()['error']


def test_profile_update(client):
    _register_and_login(client)
    response = client.put('/api/profile', json={'name': 'Linh Tran', 'center_name': 'Center B'})
    assert response.status_code == 200
    assert response.get_json()['user'] == {
        'id': 1, 'email': 'teacher@example.com', 'name': 'Linh Tran', 'center_name': 'Center B',
    }


def test_marking_requires_fields_and_task_one_image(client):
    _register_and_login(client)

    response = _start_marking(client, student_name='  ', essay='')
    assert response.status_code == 400
    assert "Student Name" in response.get_json()['error']

    assert _start_marking(client, task_type=3).status_code == 400
    assert _start_marking(client, task_type=1).status_code == 400
    assert client.get('/api/marking').status_code == 409


def test_marking_flow(client):
    _register_and_login(client)

    response = _start_marking(client)
    assert response.status_code == 201
    body = response.get_json()
    assert body['report']['overall_band'] == 6.5
    annotation = body['report']['improvements'][0]
    assert annotation['source'] == 'AI'
    highlighted = [s for s in body['view']['segments'] if s['annotation_id'] == annotation['id']]
    assert len(highlighted) == 2

    # Teacher annotation on a selected excerpt
    response = client.post('/api/marking/annotations', json={
        'excerpt': ' very important ',
        'category': 'Lexical Resource',
        'issue': 'Word choice',
        'description': 'Too simple.',
        'suggestion': '~~very important~~ **crucial**',
    })
    assert response.status_code == 201
    added = response.get_json()['report']['improvements'][-1]
    assert added['source'] == 'Teacher'
    assert added['original_text'] == 'very important'
    assert response.get_json()['view']['selected_id'] == added['id']

    # Edit keeps identity and position
    response = client.put(f"/api/marking/annotations/{annotation['id']}", json={
        'issue': 'Agreement',
        'suggestions': "~~says~~ **say**\n\n  **claim**  ",
    })
    body = response.get_json()
    assert body['updated'] is True
    edited = body['report']['improvements'][0]
    assert edited['id'] == annotation['id']
    assert edited['issue'] == 'Agreement'
    assert edited['suggestions'] == ['~~says~~ **say**', '**claim**']

    assert client.put('/api/marking/annotations/1', json={'issue': 'x'}).get_json() == {'updated': False}

    # Criterion band change recomputes the overall band
    response = client.put('/api/marking/criteria/task_response', json={'band': 7})
    assert response.get_json() == {'criterion': 'task_response', 'band': 7.0, 'overall_band': 6.5}
    response = client.put('/api/marking/criteria/lexical_resource', json={'band': 8})
    assert response.get_json()['overall_band'] == 7.0

    assert client.put('/api/marking/criteria/fluency', json={'band': 7}).status_code == 404
    assert client.put('/api/marking/criteria/task_response', json={'band': 'high'}).status_code == 400


def test_short_selection_is_rejected(client):
    _register_and_login(client)
    _start_marking(client)
    response = client.post('/api/marking/annotations', json={
        'excerpt': ' ab ', 'category': 'Grammar', 'issue': 'x', 'suggestion': 'y',
    })
    assert response.status_code == 400


@pytest.mark.parametrize("fmt, filename, mimetype", [
    ('html', 'ielts_feedback_report_anna_lee.html', 'text/html'),
    ('pdf', 'ielts_feedback_report_anna_lee.pdf', 'application/pdf'),
    ('txt', 'ielts_feedback_report_anna_lee.txt', 'text/plain'),
    ('csv', 'ielts_feedback_data_anna_lee.csv', 'text/csv'),
])
def test_exports(client, fmt, filename, mimetype):
    _register_and_login(client)
    _start_marking(client)

    response = client.get(f'/api/marking/export/{fmt}')
    assert response.status_code == 200
    assert response.mimetype == mimetype
    assert filename in response.headers['Content-Disposition']


def test_unknown_export_format(client):
    _register_and_login(client)
    _start_marking(client)
    assert client.get('/api/marking/export/docx').status_code == 400


def test_summary(client):
    _register_and_login(client)
    _start_marking(client)
    summary = client.get('/api/marking/summary').get_json()['summary']
    assert "OVERALL BAND: 6.5" in summary
    assert "Teacher: Ms Linh | GIGI NDC" in summary


def test_transcribe_pages(client, monkeypatch):
    _register_and_login(client)
    monkeypatch.setattr(IeltsMarker, "transcribe_pages", lambda self, images: f"{len(images)} pages of text")

    response = client.post('/api/marking/transcribe', data={
        'pages': [(io.BytesIO(b'one'), 'page1.jpg'), (io.BytesIO(b'two'), 'page2.png')],
    }, content_type='multipart/form-data')
    assert response.status_code == 200
    assert response.get_json() == {'essay': '2 pages of text', 'pages': 2, 'word_count': 4}

    response = client.post('/api/marking/transcribe', data={
        'pages': [(io.BytesIO(b'x'), 'notes.pdf')],
    }, content_type='multipart/form-data')
    assert response.status_code == 400


def test_transcription_failure_reports_page(client, monkeypatch):
    _register_and_login(client)

    def fail(self, images):
        raise TranscriptionError("empty", page=2)

    monkeypatch.setattr(IeltsMarker, "transcribe_pages", fail)
    response = client.post('/api/marking/transcribe', data={
        'pages': [(io.BytesIO(b'one'), 'page1.jpg')],
    }, content_type='multipart/form-data')
    assert response.status_code == 502
    assert response.get_json()['error'] == "Error on page 2: empty"


def test_unknown_route_is_json(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert 'error' in response.get_json()
