#!/usr/bin/env python3
"""
Web API for the Docker Compose update checker

Serves check reports, scan results and upgrade plans as JSON and streams
check progress over Socket.IO.  Upgrades are only ever planned here, never
executed.
"""

import hmac
import logging
import os
import threading
import traceback
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, Response
from flask_socketio import SocketIO, emit

from compose_cli import ComposeError
from dcu import ComposeUpdateChecker, __version__

app = Flask(__name__)
app.config['SECRET_KEY'] = os.urandom(32).hex()
socketio = SocketIO(app)

# Global variables
checker: Optional[ComposeUpdateChecker] = None
is_checking = False
check_lock = threading.Lock()
last_check_time: Optional[datetime] = None
last_report: Optional[Dict[str, Any]] = None
last_error: Optional[Dict[str, Any]] = None

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Basic auth is enabled only when both variables are set
AUTH_USER = os.environ.get('WEBUI_USER', '').strip()
AUTH_PASSWORD = os.environ.get('WEBUI_PASSWORD', '').strip()
AUTH_ENABLED = bool(AUTH_USER and AUTH_PASSWORD)


def _check_credentials(username: str, password: str) -> bool:
    """Verify credentials using constant-time comparison."""
    return (hmac.compare_digest(username or '', AUTH_USER) and
            hmac.compare_digest(password or '', AUTH_PASSWORD))


@app.before_request
def require_auth():
    """Enforce basic auth on all requests except the health check."""
    if not AUTH_ENABLED or request.path == '/api/health':
        return None

    auth = request.authorization
    if auth and _check_credentials(auth.username, auth.password):
        return None

    return Response(
        'Authentication required', 401,
        {'WWW-Authenticate': 'Basic realm="dcu"'}
    )


@app.before_request
def require_csrf():
    """Reject state-changing requests missing the X-Requested-With header.

    Browsers block cross-origin custom headers by default, so requiring
    this header on POST/PUT/DELETE prevents cross-site request forgery.
    """
    if request.method in ('POST', 'PUT', 'DELETE'):
        if request.headers.get('X-Requested-With') != 'XMLHttpRequest':
            return jsonify({'error': 'CSRF check failed'}), 403


def load_checker():
    """Load or reload the checker instance."""
    global checker
    config_file = os.environ.get('CONFIG_FILE') or None
    log_level = os.environ.get('LOG_LEVEL', 'INFO')

    try:
        checker = ComposeUpdateChecker(config_file, log_level)
        return True
    except Exception as e:
        logger.error(f"Failed to load checker: {e}")
        return False


def require_checker(f):
    """Decorator to check if the checker is loaded before executing route."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not checker:
            return jsonify({'error': 'Checker not loaded'}), 503
        return f(*args, **kwargs)
    return decorated


def _project_path(data: Dict[str, Any]) -> Optional[str]:
    """Requested project path, falling back to the first configured project."""
    path = (data.get('path') or '').strip()
    if path:
        return path
    projects = checker.projects if checker else []
    return projects[0] if projects else None


def _claim_check() -> bool:
    """Mark a check as running; False if one already is."""
    global is_checking
    with check_lock:
        if is_checking:
            return False
        is_checking = True
        return True


def run_check(path: str):
    """Run a single check unless another one is in progress."""
    if not _claim_check():
        logger.info(f"Check of {path} skipped: another check is running")
        return
    _execute_check(path)


def _execute_check(path: str):
    """Run a claimed check and broadcast the result."""
    global is_checking, last_check_time, last_report, last_error

    socketio.emit('status_update', {'checking': True}, namespace='/')

    def progress_callback(event_type, data):
        """Emit progress updates to connected clients."""
        socketio.emit('check_progress', {
            'event': event_type,
            'data': data
        }, namespace='/')

    try:
        report = checker.check(path, progress_callback=progress_callback)
        last_report = report.to_dict()
        last_error = None
        last_check_time = datetime.now()
        socketio.emit('check_complete', {
            'report': last_report,
            'timestamp': last_check_time.isoformat()
        }, namespace='/')
    except ComposeError as e:
        last_error = {'error': e.code, 'path': e.path, 'message': e.message}
        socketio.emit('check_error', last_error, namespace='/')
    except Exception as e:
        tb = traceback.format_exc()
        logger.error(f"Check failed: {e}\n{tb}")
        last_error = {'error': 'check_failed', 'path': path, 'message': str(e)}
        socketio.emit('check_error', last_error, namespace='/')
    finally:
        is_checking = False
        socketio.emit('status_update', {'checking': False}, namespace='/')


@app.route('/api/health')
def api_health():
    """Liveness probe (never requires auth)."""
    return jsonify({'status': 'ok'})


@app.route('/api/status')
def api_status():
    """Get current status."""
    return jsonify({
        'checker_loaded': checker is not None,
        'is_checking': is_checking,
        'last_check': last_check_time.isoformat() if last_check_time else None,
        'projects': checker.projects if checker else [],
        'config_file': checker.config_file.as_posix() if checker and checker.config_file else None
    })


@app.route('/api/version')
def api_version():
    """Get application version."""
    return jsonify({'version': __version__})


@app.route('/api/check', methods=['POST'])
def api_check():
    """Trigger a check of one compose project in the background."""
    if is_checking:
        return jsonify({'error': 'Check already in progress'}), 409

    if not checker:
        if not load_checker():
            return jsonify({'error': 'Failed to load checker'}), 503

    path = _project_path(request.get_json(silent=True) or {})
    if not path:
        return jsonify({'error': 'No project path given and none configured'}), 400

    if not _claim_check():
        return jsonify({'error': 'Check already in progress'}), 409
    threading.Thread(target=_execute_check, args=(path,)).start()

    return jsonify({'status': 'started', 'path': path})


@app.route('/api/report')
def api_report():
    """Get the last check report."""
    return jsonify({
        'last_check': last_check_time.isoformat() if last_check_time else None,
        'report': last_report,
        'error': last_error
    })


@app.route('/api/scan')
@require_checker
def api_scan():
    """List compose projects below a base directory."""
    base_dir = request.args.get('base', '.')
    depth = request.args.get('depth', checker.scan_depth, type=int)
    if depth < 1:
        return jsonify({'error': 'Depth must be at least 1'}), 400

    projects = checker.scan(base_dir, depth)
    return jsonify({
        'base_path': base_dir,
        'depth': depth,
        'compose_files': [p.to_dict() for p in projects],
        'total_found': len(projects)
    })


@app.route('/api/upgrade/plan', methods=['POST'])
@require_checker
def api_upgrade_plan():
    """Show which services an upgrade would touch, without running it."""
    data = request.get_json(silent=True) or {}
    path = _project_path(data)
    if not path:
        return jsonify({'error': 'No project path given and none configured'}), 400

    try:
        plan = checker.plan_upgrade(path, dry_run=True, force=bool(data.get('force', False)))
    except ComposeError as e:
        return jsonify({'error': e.code, 'path': e.path, 'message': e.message}), 404
    return jsonify(plan.to_dict())


@socketio.on('connect')
def handle_connect():
    """Handle client connection, rejecting unauthenticated Socket.IO when auth is enabled."""
    if AUTH_ENABLED:
        auth = request.authorization
        if not auth or not _check_credentials(auth.username, auth.password):
            return False  # Reject connection

    emit('connected', {'status': 'Connected to dcu'})

    # Send current status
    emit('status_update', {
        'checking': is_checking,
        'last_check': last_check_time.isoformat() if last_check_time else None
    })


# Load checker on startup (runs when gunicorn imports this module)
load_checker()

if __name__ == '__main__':
    # For local development only
    socketio.run(app, host='127.0.0.1', port=int(os.environ.get('PORT', '5000')))
