"""
IELTS Writing Marker - Flask Application
Main application file with all routes and marker-session management.
"""
import base64
import binascii
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, Response, request, session, jsonify, current_app
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import config
from .models import db, User
from .utils import (
    SESSION_TOKEN_KEY,
    hash_password,
    verify_password,
    login_required,
    get_current_user,
    get_marker_context,
)
from .services.annotation_store import AnnotationStore, CRITERION_KEYS
from .services.errors import (
    AIServiceError,
    BandValueError,
    FeedbackFormatError,
    MarkerError,
    UnknownCriterionError,
)
from .services.feedback_ingest import parse_category
from .services.gemini_client import GeminiClient, InlineImage
from .services.ielts_marker import TASK_1, TASK_2, IeltsMarker, guess_mime_type, image_from_bytes
from .services.pdf_report import render_pdf_report
from .services.report_export import (
    ExportContext,
    export_filename,
    render_csv_report,
    render_html_report,
    render_lms_summary,
    render_text_report,
)
from .services.screen_view import build_screen_view, count_words
from .services.session_registry import MarkingSession, SessionRegistry, get_registry


# Initialize Flask app
app = Flask(__name__)
app.config.from_object(config[os.getenv('FLASK_ENV', 'development')])

# Initialize extensions
db.init_app(app)
CORS(app, resources={r"/api/*": {"origins": app.config["CORS_ALLOWED_ORIGINS"]}})

# Marker contexts, one per login: {token: MarkerContext}
app.extensions['marker_sessions'] = SessionRegistry()

_DATA_URL_PATTERN = re.compile(r'^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$', re.DOTALL)

EXPORT_MIMETYPES = {
    'html': 'text/html; charset=utf-8',
    'pdf': 'application/pdf',
    'txt': 'text/plain; charset=utf-8',
    'csv': 'text/csv; charset=utf-8',
}


def init_database():
    """Create tables if needed."""
    with app.app_context():
        db.create_all()
        current_app.logger.info("[DATABASE] Initialized successfully")


def _payload() -> Dict[str, Any]:
    """JSON body, or form fields for multipart requests."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ''


def _build_client(api_key: str) -> GeminiClient:
    return GeminiClient(
        api_key=api_key,
        model=current_app.config['GEMINI_MARKING_MODEL'],
        fallback_model=current_app.config['GEMINI_TRANSCRIBE_MODEL'],
        api_root=current_app.config['GEMINI_API_ROOT'],
        timeout=current_app.config['GEMINI_TIMEOUT_SECONDS'],
    )


def _image_from_upload(upload) -> InlineImage:
    suffix = Path(upload.filename or '').suffix.lower()
    if suffix not in current_app.config['ALLOWED_IMAGE_EXTENSIONS']:
        raise ValueError(f"Unsupported image type: {upload.filename or 'unnamed file'}")
    content = upload.read()
    if not content:
        raise ValueError(f"Uploaded image is empty: {upload.filename}")
    mime_type = upload.mimetype if (upload.mimetype or '').startswith('image/') else guess_mime_type(upload.filename)
    return image_from_bytes(content, mime_type)


def _image_from_base64(value: str, mime_type: Optional[str] = None) -> InlineImage:
    """Accept a data URL or bare base64 data."""
    match = _DATA_URL_PATTERN.match(value.strip())
    if match:
        mime_type, value = match.group('mime'), match.group('data')
    try:
        content = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Image is not valid base64 data") from None
    if not content:
        raise ValueError("Image is empty")
    return image_from_bytes(content, mime_type or 'image/jpeg')


def _request_image(payload: Dict[str, Any]) -> Optional[InlineImage]:
    upload = request.files.get('image')
    if upload is not None and upload.filename:
        return _image_from_upload(upload)
    raw = payload.get('image')
    if isinstance(raw, str) and raw.strip():
        return _image_from_base64(raw, payload.get('image_mime_type'))
    return None


def _suggestion_list(value: Any) -> List[str]:
    """Suggestions as a list, or newline separated text; blank lines dropped."""
    if isinstance(value, str):
        items = value.split('\n')
    elif isinstance(value, list):
        items = [item for item in value if isinstance(item, str)]
    else:
        items = []
    return [item.strip() for item in items if item.strip()]


def _active_marking():
    context = get_marker_context()
    return context, context.marking if context else None


def _no_marking():
    return jsonify({'error': 'No essay is being marked. Submit an essay first.'}), 409


def _marking_payload(marking: MarkingSession, selected_id: Optional[int] = None) -> Dict[str, Any]:
    report = marking.store.report
    return {
        'student_name': marking.student_name,
        'class_name': marking.class_name,
        'task_type': marking.task_type,
        'question': marking.question,
        'essay': marking.essay,
        'report': report.to_dict(),
        'view': build_screen_view(marking.essay, report.annotations, selected_id),
    }


def _marking_response(marking: MarkingSession, selected_id: Optional[int] = None, status: int = 200):
    return jsonify(_marking_payload(marking, selected_id)), status


# ============================================================================
# AUTHENTICATION & PROFILE ROUTES
# ============================================================================

@app.route('/api/register', methods=['POST'])
def register():
    """Create a teacher account."""
    payload = _payload()
    email = _text(payload, 'email').lower()
    password = payload.get('password') or ''

    # Validation
    if not email or not password:
        return jsonify({'error': 'Email and password are required.'}), 400

    if len(password) < 8:
        return jsonify({'error': 'Password must be at least 8 characters.'}), 400

    # Check if user exists
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'Email already registered. Please log in.'}), 409

    user = User(
        email=email,
        password_hash=hash_password(password),
        name=_text(payload, 'name'),
        center_name=_text(payload, 'center_name') or current_app.config['DEFAULT_CENTER_NAME'],
    )
    db.session.add(user)
    db.session.commit()

    current_app.logger.info(f"Registered teacher account {email}")
    return jsonify({'message': 'Account created. Please log in.', 'user': user.to_dict()}), 201


@app.route('/api/login', methods=['POST'])
def login():
    """Log in with email, password and a Gemini API key."""
    payload = _payload()
    email = _text(payload, 'email').lower()
    password = payload.get('password') or ''
    api_key = _text(payload, 'api_key')

    if not email or not password:
        return jsonify({'error': 'Email and password are required.'}), 400
    if not api_key:
        return jsonify({'error': 'A Gemini API key is required.'}), 400

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        return jsonify({'error': 'Invalid email or password.'}), 401

    client = _build_client(api_key)
    if not client.validate_key(current_app.config['GEMINI_VALIDATION_MODEL']):
        return jsonify({'error': 'The Gemini API key is invalid or expired. Please check it and try again.'}), 400

    registry = get_registry()
    registry.close(session.get(SESSION_TOKEN_KEY))
    marker = IeltsMarker(client, transcribe_model=current_app.config['GEMINI_TRANSCRIBE_MODEL'])
    token = registry.open(user.id, marker)

    session.clear()
    session['user_id'] = user.id
    session[SESSION_TOKEN_KEY] = token
    session.permanent = True

    current_app.logger.info(f"Teacher {email} logged in")
    return jsonify({'message': f'Welcome back, {user.name or email}!', 'user': user.to_dict()})


@app.route('/api/logout', methods=['POST'])
def logout():
    """Log out and discard the marker context."""
    get_registry().close(session.get(SESSION_TOKEN_KEY))
    session.clear()
    return jsonify({'message': 'You have been logged out.'})


@app.route('/api/profile', methods=['GET', 'PUT'])
@login_required
def profile():
    """Read or update the teacher's name and center."""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'Not authenticated'}), 401

    if request.method == 'PUT':
        payload = _payload()
        if 'name' in payload:
            user.name = _text(payload, 'name')
        if 'center_name' in payload:
            user.center_name = _text(payload, 'center_name')
        db.session.commit()
        current_app.logger.info(f"Updated profile for {user.email}")

    return jsonify({'user': user.to_dict()})


# ============================================================================
# MARKING ROUTES
# ============================================================================

@app.route('/api/marking/transcribe', methods=['POST'])
@login_required
def transcribe_pages():
    """Transcribe photographed essay pages into one text."""
    context = get_marker_context()
    uploads = [upload for upload in request.files.getlist('pages') if upload.filename]
    if not uploads:
        return jsonify({'error': 'Upload at least one page image.'}), 400

    try:
        images = [_image_from_upload(upload) for upload in uploads]
    except ValueError as exc:
        return jsonify({'error': str(exc)}), 400

    essay = context.marker.transcribe_pages(images)
    return jsonify({'essay': essay, 'pages': len(images), 'word_count': count_words(essay)})


@app.route('/api/marking', methods=['GET', 'POST'])
@login_required
def marking():
    """Start marking an essay (POST) or fetch the current marking (GET)."""
    context, current = _active_marking()

    if request.method == 'GET':
        if current is None:
            return _no_marking()
        selected = request.args.get('selected', type=int)
        return _marking_response(current, selected_id=selected)

    payload = _payload()
    student_name = _text(payload, 'student_name')
    class_name = _text(payload, 'class_name')
    question = _text(payload, 'question')
    essay = payload.get('essay') if isinstance(payload.get('essay'), str) else ''

    try:
        task_type = int(payload.get('task_type', TASK_2))
    except (TypeError, ValueError):
        return jsonify({'error': 'Invalid task type'}), 400
    if task_type not in (TASK_1, TASK_2):
        return jsonify({'error': 'Invalid task type'}), 400

    missing = [
        label for label, value in (
            ('Student Name', student_name),
            ('Class Name', class_name),
            ('Question', question),
            ("Student's Answer", essay.strip()),
        ) if not value
    ]
    if missing:
        return jsonify({'error': f"Please complete all required fields: {', '.join(missing)}"}), 400

    try:
        image = _request_image(payload)
    except ValueError as exc:
        return jsonify({'error': str(exc)}), 400
    if task_type == TASK_1 and image is None:
        return jsonify({'error': 'Please upload an image for Task 1.'}), 400

    report = context.marker.mark(task_type, question, essay, context.allocator, image=image)
    context.marking = MarkingSession(
        student_name=student_name,
        class_name=class_name,
        task_type=task_type,
        question=question,
        essay=essay,
        store=AnnotationStore(report, context.allocator),
    )
    current_app.logger.info(
        f"Marking started for {student_name} ({class_name}): overall band {report.overall_band}"
    )
    return _marking_response(context.marking, status=201)


@app.route('/api/marking/annotations', methods=['POST'])
@login_required
def add_annotation():
    """Add a teacher annotation for a selected excerpt."""
    _, current = _active_marking()
    if current is None:
        return _no_marking()

    payload = _payload()
    excerpt = _text(payload, 'excerpt')
    if len(excerpt) < current_app.config['MIN_SELECTION_LENGTH']:
        return jsonify({
            'error': f"Select at least {current_app.config['MIN_SELECTION_LENGTH']} characters of the essay."
        }), 400

    category = parse_category(payload.get('category'))
    if category is None:
        return jsonify({'error': 'Invalid category'}), 400

    suggestion = _text(payload, 'suggestion')
    issue = _text(payload, 'issue')
    if not issue or not suggestion:
        return jsonify({'error': 'Issue and suggestion are required.'}), 400

    annotation = current.store.add_teacher_annotation(
        excerpt,
        category,
        issue,
        _text(payload, 'description'),
        suggestion,
    )
    current_app.logger.info(f"Teacher annotation {annotation.id} added ({category.initials})")
    return _marking_response(current, selected_id=annotation.id, status=201)


@app.route('/api/marking/annotations/<int:annotation_id>', methods=['PUT'])
@login_required
def update_annotation(annotation_id):
    """Edit an annotation's category, issue, description and suggestions."""
    _, current = _active_marking()
    if current is None:
        return _no_marking()

    existing = current.store.get(annotation_id)
    if existing is None:
        return jsonify({'updated': False})

    payload = _payload()
    changes: Dict[str, Any] = {}
    if 'category' in payload:
        category = parse_category(payload.get('category'))
        if category is None:
            return jsonify({'error': 'Invalid category'}), 400
        changes['category'] = category
    for field_name in ('issue', 'description'):
        if field_name in payload:
            changes[field_name] = _text(payload, field_name)
    if 'suggestions' in payload:
        changes['suggestions'] = tuple(_suggestion_list(payload.get('suggestions')))

    updated = current.store.update_annotation(replace(existing, **changes))
    return jsonify({**_marking_payload(current, selected_id=annotation_id), 'updated': updated})


@app.route('/api/marking/criteria/<criterion_key>', methods=['PUT'])
@login_required
def update_criterion(criterion_key):
    """Set a criterion band and return the recomputed overall band."""
    _, current = _active_marking()
    if current is None:
        return _no_marking()
    if criterion_key not in CRITERION_KEYS:
        return jsonify({'error': f'Unknown criterion: {criterion_key}'}), 404

    payload = _payload()
    overall = current.store.set_criterion_band(criterion_key, payload.get('band'))
    criterion = current.store.report.criterion(criterion_key)
    return jsonify({'criterion': criterion_key, 'band': criterion.band, 'overall_band': overall})


@app.route('/api/marking/export/<fmt>')
@login_required
def export_report(fmt):
    """Download the marked report as html, pdf, txt or csv."""
    _, current = _active_marking()
    if current is None:
        return _no_marking()
    if fmt not in EXPORT_MIMETYPES:
        return jsonify({'error': f'Unsupported export format: {fmt}'}), 400

    ctx = ExportContext.from_session(current, get_current_user())
    if fmt == 'html':
        body = render_html_report(ctx)
    elif fmt == 'pdf':
        body = render_pdf_report(ctx)
    elif fmt == 'txt':
        body = render_text_report(ctx)
    else:
        body = render_csv_report(ctx)

    filename = export_filename(ctx, fmt)
    current_app.logger.info(f"Exported {fmt} report {filename}")
    return Response(
        body,
        mimetype=EXPORT_MIMETYPES[fmt],
        headers={'Content-Disposition': f'attachment; filename="{filename}"'},
    )


@app.route('/api/marking/summary')
@login_required
def marking_summary():
    """Plain-text summary to paste into an LMS."""
    _, current = _active_marking()
    if current is None:
        return _no_marking()
    ctx = ExportContext.from_session(current, get_current_user())
    return jsonify({'summary': render_lms_summary(ctx)})


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.errorhandler(MarkerError)
def marker_error(error):
    """Map marking exceptions onto JSON responses."""
    if isinstance(error, UnknownCriterionError):
        return jsonify({'error': f'Unknown criterion: {error.args[0]}'}), 404
    if isinstance(error, BandValueError):
        return jsonify({'error': str(error)}), 400
    if isinstance(error, (AIServiceError, FeedbackFormatError)):
        current_app.logger.error(f"AI service failure: {error}")
        return jsonify({'error': str(error)}), 502
    return jsonify({'error': str(error)}), 400


@app.errorhandler(HTTPException)
def http_error(error):
    """JSON body for 404, 405, 413 and friends."""
    return jsonify({'error': error.description}), error.code


@app.errorhandler(500)
def internal_error(error):
    """500 error handler."""
    db.session.rollback()
    return jsonify({'error': 'Internal server error'}), 500


# ============================================================================
# INITIALIZATION
# ============================================================================

if __name__ == '__main__':
    init_database()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 1111)), debug=True)
