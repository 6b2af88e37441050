from flask import Flask, request, jsonify, session, make_response
from flask_socketio import SocketIO, emit
from functools import wraps
import csv
import logging
import os
import threading
from io import StringIO

from artscore.aggregator import compute_results, performance_detail
from artscore.auth import ADMIN_ROLE, JUDGE_ROLE, authenticate_admin, authenticate_judge
from artscore.errors import AuthenticationError, TransportError, ValidationError
from artscore.export import build_results_csv, build_results_pdf, results_filename
from artscore.models import AuditLog, db
from artscore.store import COLLECTIONS, SqlStore, split_path
from artscore.suggestions import CommentSuggester
from artscore.sync import SyncClient

logger = logging.getLogger(__name__)

def build_database_uri():
    database_url = os.getenv('DATABASE_URL')
    if database_url:
        return database_url
    return 'sqlite:///artscore.db'


app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'your-secret-key-change-this')
app.config['SQLALCHEMY_DATABASE_URI'] = build_database_uri()
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['COMPETITION_TITLE'] = os.getenv('COMPETITION_TITLE', 'Talent Show')

socketio = SocketIO(app, async_mode='threading')

# Static admin password (override with environment variable)
ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', 'admin@123')

db.init_app(app)

store = SqlStore(app)
sync_client = SyncClient(store)
suggester = None

# Authentication decorators
def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if session.get('role') != ADMIN_ROLE:
            return jsonify({'success': False, 'message': 'Admin login required.'}), 401
        return f(*args, **kwargs)
    return decorated_function

def judge_login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if session.get('role') != JUDGE_ROLE or not session.get('judge_id'):
            return jsonify({'success': False, 'message': 'Judge login required.'}), 401
        if sync_client.data.get_judge(session['judge_id']) is None:
            session.clear()
            return jsonify({'success': False, 'message': 'Judge login required.'}), 401
        return f(*args, **kwargs)
    return decorated_function

_store_ready = False
_store_ready_lock = threading.Lock()

def ensure_store_ready():
    """Create tables and start broadcasting snapshots, once per process."""
    global _store_ready
    if _store_ready:
        return
    with _store_ready_lock:
        if _store_ready:
            return
        with app.app_context():
            db.create_all()
        store.subscribe(broadcast_snapshot)
        sync_client.start()
        _store_ready = True

@app.before_request
def ensure_store_once():
    ensure_store_ready()

def get_suggester():
    global suggester
    if suggester is None:
        suggester = CommentSuggester()
    return suggester

def broadcast_snapshot(snapshot):
    emit_realtime_update('snapshot', snapshot.to_payload())

def emit_realtime_update(event_name, payload=None):
    try:
        socketio.emit(event_name, payload or {})
    except Exception:
        logger.exception("Realtime emit of %s failed", event_name)

def log_event(action, details=None):
    try:
        role = session.get('role')
        actor = session.get('judge_id') if role == JUDGE_ROLE else role
        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        entry = AuditLog(
            role=role,
            actor=actor or 'anonymous',
            action=action,
            details=details,
            ip_address=ip_address
        )
        db.session.add(entry)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Could not record audit event %s", action)

def request_data():
    return request.get_json(silent=True) or request.form.to_dict() or {}

@app.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({'success': False, 'message': str(error)}), 400

@app.errorhandler(AuthenticationError)
def handle_authentication_error(error):
    return jsonify({'success': False, 'message': str(error)}), 401

@app.errorhandler(TransportError)
def handle_transport_error(error):
    logger.warning("Store unavailable: %s", error)
    return jsonify({'success': False, 'message': 'Scoring data is temporarily unavailable.'}), 503

# Routes
@app.route('/login', methods=['POST'])
def login():
    password = request_data().get('password', '')
    try:
        authenticate_admin(password, ADMIN_PASSWORD)
    except AuthenticationError:
        log_event('login_failed', 'role=admin')
        raise
    session.clear()
    session['role'] = ADMIN_ROLE
    log_event('login_success', 'role=admin')
    return jsonify({'success': True, 'role': ADMIN_ROLE})

@app.route('/judge/login', methods=['POST'])
def judge_login():
    access_code = request_data().get('access_code', '')
    try:
        judge = authenticate_judge(sync_client.data.judges, access_code)
    except AuthenticationError:
        log_event('login_failed', 'role=judge')
        raise
    session.clear()
    session['role'] = JUDGE_ROLE
    session['judge_id'] = judge.id
    log_event('login_success', f'judge={judge.name}')
    return jsonify({'success': True, 'role': JUDGE_ROLE, 'judge': judge.to_record()})

@app.route('/logout', methods=['POST'])
def logout():
    if session.get('role'):
        log_event('logout')
    session.clear()
    return jsonify({'success': True})

@app.route('/api/state')
def state():
    data = sync_client.data.to_dict()
    if session.get('role') != ADMIN_ROLE:
        for judge in data['judges']:
            judge.pop('accessCode', None)
    return jsonify(data)

@app.route('/admin/performances', methods=['POST'])
@admin_required
def add_performance():
    data = request_data()
    performance = sync_client.add_performance(
        data.get('name'),
        data.get('performer', ''),
        data.get('image_url', '')
    )
    log_event('performance_created', f'id={performance.id} name={performance.name}')
    return jsonify({'success': True, 'performance': performance.to_record()}), 201

@app.route('/admin/performances/<performance_id>', methods=['PATCH'])
@admin_required
def update_performance(performance_id):
    data = request_data()
    sync_client.update_performance(
        performance_id,
        name=data.get('name'),
        performer=data.get('performer'),
        image_url=data.get('image_url'),
        order=data.get('order')
    )
    log_event('performance_updated', f'id={performance_id}')
    return jsonify({'success': True})

@app.route('/admin/performances/<performance_id>', methods=['DELETE'])
@admin_required
def delete_performance(performance_id):
    performance = sync_client.data.get_performance(performance_id)
    if performance is None:
        return jsonify({'success': False, 'message': 'Performance not found.'}), 404
    sync_client.delete_performance(performance_id)
    log_event('performance_deleted', f'id={performance_id} name={performance.name}')
    return jsonify({'success': True})

@app.route('/admin/active', methods=['POST'])
@admin_required
def set_active_performance():
    performance_id = request_data().get('performance_id') or None
    sync_client.set_active_performance(performance_id)
    log_event('active_performance_set', f'id={performance_id}')
    return jsonify({'success': True, 'activePerformanceId': performance_id})

@app.route('/admin/judges', methods=['POST'])
@admin_required
def add_judge():
    judge = sync_client.add_judge(request_data().get('name'))
    log_event('judge_created', f'id={judge.id} name={judge.name}')
    return jsonify({'success': True, 'judge': judge.to_record()}), 201

@app.route('/admin/judges/<judge_id>', methods=['PATCH'])
@admin_required
def update_judge(judge_id):
    sync_client.update_judge(judge_id, request_data().get('name'))
    log_event('judge_updated', f'id={judge_id}')
    return jsonify({'success': True})

@app.route('/admin/judges/<judge_id>', methods=['DELETE'])
@admin_required
def delete_judge(judge_id):
    judge = sync_client.data.get_judge(judge_id)
    if judge is None:
        return jsonify({'success': False, 'message': 'Judge not found.'}), 404
    sync_client.delete_judge(judge_id)
    log_event('judge_deleted', f'id={judge_id} name={judge.name}')
    return jsonify({'success': True})

@app.route('/admin/settings/max-score', methods=['POST'])
@admin_required
def set_max_score():
    max_score = request_data().get('max_score')
    sync_client.set_max_score(max_score)
    log_event('max_score_set', f'max_score={max_score}')
    return jsonify({'success': True})

@app.route('/admin/scores/prune', methods=['POST'])
@admin_required
def prune_scores():
    removed = sync_client.prune_orphaned_scores()
    log_event('orphaned_scores_pruned', f'count={len(removed)}')
    return jsonify({'success': True, 'removed': removed})

def current_results():
    data = sync_client.data
    return compute_results(data.performances, data.scores, data.judges)

@app.route('/admin/results')
@admin_required
def results():
    return jsonify({'results': [row.to_dict() for row in current_results()]})

@app.route('/admin/results/<performance_id>')
@admin_required
def results_detail(performance_id):
    data = sync_client.data
    performance = data.get_performance(performance_id)
    if performance is None:
        return jsonify({'success': False, 'message': 'Performance not found.'}), 404
    return jsonify(performance_detail(performance, data.judges, data.scores).to_dict())

@app.route('/admin/results.csv')
@admin_required
def results_csv():
    response = make_response(build_results_csv(current_results()))
    response.headers['Content-Type'] = 'text/csv; charset=utf-8'
    response.headers['Content-Disposition'] = f'attachment; filename={results_filename("csv")}'
    return response

@app.route('/admin/results.pdf')
@admin_required
def results_pdf():
    pdf = build_results_pdf(current_results(), app.config['COMPETITION_TITLE'])
    response = make_response(pdf)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'attachment; filename={results_filename("pdf")}'
    return response

def build_log_query(params):
    query = AuditLog.query
    action = params.get('action')
    role = params.get('role')
    if action:
        query = query.filter(AuditLog.action == action)
    if role:
        query = query.filter(AuditLog.role == role)
    return query

@app.route('/admin/logs')
@admin_required
def admin_logs():
    logs = build_log_query(request.args).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(200).all()
    return jsonify({'logs': [
        {
            'time': log.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            'role': log.role,
            'actor': log.actor,
            'action': log.action,
            'details': log.details,
            'ip': log.ip_address
        }
        for log in logs
    ]})

@app.route('/admin/logs.csv')
@admin_required
def admin_logs_csv():
    logs = build_log_query(request.args).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).all()

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(['Time', 'Role', 'Actor', 'Action', 'Details', 'IP'])
    for log in logs:
        writer.writerow([
            log.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            log.role or '',
            log.actor or '',
            log.action,
            log.details or '',
            log.ip_address or ''
        ])

    response = make_response(output.getvalue())
    response.headers['Content-Type'] = 'text/csv'
    response.headers['Content-Disposition'] = 'attachment; filename=audit_logs.csv'
    return response

@app.route('/judge/portal')
@judge_login_required
def judge_portal():
    data = sync_client.data
    judge = data.get_judge(session['judge_id'])
    if judge is None:
        session.clear()
        return jsonify({'success': False, 'message': 'Judge login required.'}), 401
    performance = data.active_performance
    score = data.find_score(judge.id, performance.id) if performance else None
    return jsonify({
        'judge': {'id': judge.id, 'name': judge.name},
        'performance': performance.to_record() if performance else None,
        'score': score.to_record() if score else None,
        'submitted': score is not None,
        'maxScore': data.max_score,
        'step': data.settings.step
    })

@app.route('/judge/score', methods=['POST'])
@judge_login_required
def judge_score():
    data = request_data()
    active_id = sync_client.data.active_performance_id
    performance_id = data.get('performance_id') or active_id
    if not active_id or performance_id != active_id:
        return jsonify({'success': False, 'message': 'No active performance for scoring.'}), 400
    if data.get('score') is None:
        return jsonify({'success': False, 'message': 'Missing required fields.'}), 400

    submission = sync_client.submit_score(session['judge_id'], performance_id, data.get('score'), data.get('comment', ''))
    return jsonify({'success': True, 'score': submission.score.to_record()})

@app.route('/judge/suggest', methods=['POST'])
@judge_login_required
def judge_suggest():
    data = request_data()
    app_data = sync_client.data
    performance = app_data.get_performance(data.get('performance_id') or app_data.active_performance_id)
    if performance is None:
        return jsonify({'success': False, 'message': 'No active performance for scoring.'}), 400
    try:
        score_value = float(data.get('score', 0))
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'Invalid score value.'}), 400
    comment = get_suggester().suggest(score_value, performance.name, app_data.max_score)
    return jsonify({'success': True, 'comment': comment})

# Socket.IO: raw tree access for realtime clients. These events are not tied
# to a login session, so any connected client can write; paths are limited
# to the four collections.
@socketio.on('connect')
def handle_connect(auth=None):
    ensure_store_ready()
    emit('snapshot', store.snapshot().to_payload())

def apply_store_event(operation, path, *args):
    try:
        root = split_path(path)[0]
        if root not in COLLECTIONS:
            raise ValidationError(f"Unknown collection: {root}")
        operation(path, *args)
    except (ValidationError, TransportError) as e:
        return {'ok': False, 'error': str(e)}
    return {'ok': True}

@socketio.on('write')
def handle_write(data=None):
    ensure_store_ready()
    data = data or {}
    return apply_store_event(store.write_path, data.get('path'), data.get('value'))

@socketio.on('patch')
def handle_patch(data=None):
    ensure_store_ready()
    data = data or {}
    return apply_store_event(store.patch_path, data.get('path'), data.get('fields'))

@socketio.on('delete')
def handle_delete(data=None):
    ensure_store_ready()
    data = data or {}
    return apply_store_event(store.delete_path, data.get('path'))

if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    ensure_store_ready()
    socketio.run(app, debug=True)
