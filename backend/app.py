import os
import secrets
from flask import Flask, jsonify, request, send_from_directory, redirect, session
from flask_cors import CORS
from flask_session import Session
from dotenv import load_dotenv
import logging
from datetime import datetime, timedelta
from werkzeug.middleware.proxy_fix import ProxyFix
from auth_utils import (
    require_auth, require_admin, require_superadmin, login_user, logout_user,
    current_user, current_access_token, get_gateway, ADMIN_ROLES
)
from supabase_service import SupabaseService, SupabaseError
from selection import CascadingSelection, SelectionError, LEVELS, levels_for
from assignments import AssignmentSet, missing_choice_message, staff_label
from navigation import panels_for, resolve_client_path
from security import init_security_headers, rate_limit, rate_limit_auth, rate_limiter
from validators import (
    validate_fastighet, validate_byggnad, validate_objekt, validate_user,
    validate_password_reset, normalize_user_payload
)

# Konfigurera loggning
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Ladda miljövariabler
load_dotenv()

# Initiera Flask. Statiska filer ligger på roten; okända sökvägar går via 404-hanteraren till klientrutterna.
app = Flask(__name__,
            static_folder='static',
            static_url_path='')
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)

# Cookie-baserade signerade sessioner som standard
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', secrets.token_hex(32))
app.config['SESSION_PERMANENT'] = False
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=2)
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') != 'development'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_NAME'] = 'fastighet_session'
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024

# Serverside-sessioner (t.ex. SESSION_TYPE=filesystem) när tokens inte ska ligga i cookien
if os.getenv('SESSION_TYPE'):
    app.config['SESSION_TYPE'] = os.getenv('SESSION_TYPE')
    app.config['SESSION_FILE_DIR'] = os.getenv('SESSION_FILE_DIR', '/tmp/flask_session')
    Session(app)

# CORS – skicka aldrig None till Flask-CORS
default_origin = 'http://localhost:3000'
frontend_url = (os.getenv('FRONTEND_URL') or '').strip().rstrip('/')
if not frontend_url:
    logger.warning('FRONTEND_URL is not set – falling back to %s for CORS', default_origin)

CORS(app,
     origins=[frontend_url or default_origin],
     supports_credentials=True,
     allow_headers=['Content-Type', 'Authorization'])

# Supabase-gatewayn delas av alla requests; tester byter ut den
app.extensions['supabase'] = SupabaseService()

# Initiera säkerhetsheaders
init_security_headers(app)

# Rensa rate limiter periodiskt
@app.before_request
def cleanup_rate_limiter():
    if not hasattr(app, 'last_cleanup'):
        app.last_cleanup = datetime.now()

    if (datetime.now() - app.last_cleanup).total_seconds() > 3600:
        rate_limiter.cleanup()
        app.last_cleanup = datetime.now()


def _db():
    """Gatewayn som anropar PostgREST med den inloggades token (RLS)."""
    return get_gateway().with_token(current_access_token())


def _platform_error(e, fallback):
    # Plattformens text visas oförändrad
    status = 400 if e.is_client_error else 500
    return jsonify({'error': e.message or fallback}), status


def _validation_error(errors):
    return jsonify({'error': errors[0], 'errors': errors}), 400


def _confirmed():
    if (request.args.get('confirm') or '').lower() in ('1', 'true', 'yes'):
        return True
    body = request.get_json(silent=True) or {}
    return body.get('confirm') is True


def _confirm_required(message):
    return jsonify({'confirm_required': True, 'message': message}), 409


# Health check
@app.route('/health')
@rate_limit(max_requests=1000, window_seconds=60)
def health_check():
    return jsonify({'status': 'healthy'}), 200

# ---- Inloggning ----

@app.route('/api/login', methods=['POST'])
@rate_limit_auth()
def login():
    try:
        data = request.get_json(silent=True) or {}
        email = (data.get('email') or '').strip()
        password = data.get('password') or ''
        if not email or not password:
            return jsonify({'error': 'Ange e-post och lösenord.'}), 400

        try:
            user = login_user(email, password)
        except SupabaseError as e:
            logger.warning(f"Login failed: {e.message}")
            if e.is_client_error:
                return jsonify({'error': e.message}), 401
            return jsonify({'error': e.message}), 500

        return jsonify({'user': user, 'panels': panels_for(user.get('roll'))}), 200
    except Exception as e:
        logger.error(f"Error in /api/login: {e}")
        return jsonify({'error': 'Inloggningen misslyckades'}), 500


@app.route('/api/logout', methods=['POST'])
@rate_limit(max_requests=100, window_seconds=60)
def logout():
    try:
        logout_user()
        return jsonify({'success': True}), 200
    except Exception as e:
        logger.error(f"Error in /api/logout: {e}")
        session.clear()
        return jsonify({'success': True}), 200


@app.route('/api/forgot-password', methods=['POST'])
@rate_limit_auth(max_requests=5, window_seconds=300)
def forgot_password():
    try:
        data = request.get_json(silent=True) or {}
        email = (data.get('email') or '').strip()
        if not email:
            return jsonify({'error': 'Ange din e-postadress.'}), 400
        redirect_to = f"{frontend_url or default_origin}/reset-password"
        get_gateway().reset_password_for_email(email, redirect_to)
        logger.info("Password reset requested")
        return jsonify({
            'success': True,
            'message': 'Om adressen finns skickas en länk för att återställa lösenordet.'
        }), 200
    except SupabaseError as e:
        logger.error(f"Error requesting password reset: {e.message}")
        return _platform_error(e, 'Kunde inte skicka återställningslänk')
    except Exception as e:
        logger.error(f"Error in /api/forgot-password: {e}")
        return jsonify({'error': 'Kunde inte skicka återställningslänk'}), 500


@app.route('/api/reset-password', methods=['POST'])
@rate_limit_auth(max_requests=10, window_seconds=300)
def reset_password():
    try:
        data = request.get_json(silent=True) or {}
        ok, error = validate_password_reset(data.get('pw1'), data.get('pw2'))
        if not ok:
            return jsonify({'error': error}), 400

        token = (data.get('access_token') or '').strip() or session.get('access_token')
        if not token:
            return jsonify({'error': 'Länken är ogiltig eller har gått ut.'}), 401

        get_gateway().update_password(token, data['pw1'])
        logger.info("Password updated via reset flow")
        return jsonify({'success': True, 'message': 'Lösenordet är uppdaterat.'}), 200
    except SupabaseError as e:
        logger.error(f"Error updating password: {e.message}")
        return _platform_error(e, 'Kunde inte uppdatera lösenordet')
    except Exception as e:
        logger.error(f"Error in /api/reset-password: {e}")
        return jsonify({'error': 'Kunde inte uppdatera lösenordet'}), 500


# Me endpoint med rollflaggor och paneler
@app.route('/api/me')
@require_auth
@rate_limit(max_requests=1000, window_seconds=60)
def me():
    try:
        user = current_user() or {}
        roll = user.get('roll') or 'user'
        return jsonify({
            'id': user.get('id'),
            'email': user.get('email'),
            'fornamn': user.get('fornamn'),
            'efternamn': user.get('efternamn'),
            'roll': roll,
            'is_superadmin': roll == 'superadmin',
            'is_admin': roll in ADMIN_ROLES,
            'panels': panels_for(roll),
        }), 200
    except Exception as e:
        logger.error(f"Error in /api/me: {e}")
        return jsonify({'error': 'Kunde inte hämta användarinformation'}), 500

# ---- Skapa användare (admin-API med service role) ----

@app.route('/api/createuser', methods=['POST'])
@app.route('/create-user', methods=['POST'])
@rate_limit(max_requests=30, window_seconds=60)
def create_auth_user():
    try:
        body = request.get_json(silent=True) or {}
        payload = normalize_user_payload(body)
        if not payload['email'] or not payload['password']:
            return jsonify({'error': 'Email and password required'}), 400

        metadata = {
            'fornamn': payload['fornamn'],
            'efternamn': payload['efternamn'],
            'roll': payload['roll'],
            'adress': payload['adress'],
        }
        try:
            user = get_gateway().admin_create_user(payload['email'], payload['password'], metadata)
        except SupabaseError as e:
            logger.error(f"Admin create user failed: {e.message}")
            return jsonify({'error': e.message}), 400 if e.is_client_error else 500

        logger.info(f"Created auth user {user.get('id')}")
        return jsonify({'success': True, 'userId': user.get('id'), 'message': 'User created'}), 201
    except Exception as e:
        logger.error(f"Error in create user: {e}")
        return jsonify({'error': 'Internal server error'}), 500

# ---- Användare ----

@app.route('/api/users')
@require_auth
@require_admin
@rate_limit(max_requests=120, window_seconds=60)
def list_users():
    try:
        return jsonify(_db().list_users()), 200
    except SupabaseError as e:
        logger.error(f"Error listing users: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error listing users: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/users/<user_id>')
@require_auth
@require_admin
@rate_limit(max_requests=120, window_seconds=60)
def get_user(user_id):
    try:
        user = _db().get_user(user_id)
        if not user:
            return jsonify({'error': 'Användaren kunde inte hittas'}), 404
        return jsonify(user), 200
    except SupabaseError as e:
        logger.error(f"Error fetching user {user_id}: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching user {user_id}: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/users', methods=['POST'])
@require_auth
@require_superadmin
@rate_limit(max_requests=30, window_seconds=60)
def create_user():
    try:
        cleaned, errors = validate_user(request.get_json(silent=True) or {}, require_password=True)
        if errors:
            return _validation_error(errors)

        password = cleaned.pop('password')
        metadata = {k: cleaned[k] for k in ('fornamn', 'efternamn', 'roll', 'adress')}
        auth_user = get_gateway().admin_create_user(cleaned['email'], password, metadata)
        user_id = auth_user.get('id')
        if not user_id:
            return jsonify({'error': 'Kunde inte skapa användare'}), 500

        _db().add_user(dict(cleaned, id=user_id))
        logger.info(f"User {current_user().get('id')} created user {user_id} with roll {cleaned['roll']}")
        return jsonify({'success': True, 'id': user_id, 'message': 'Användare skapad!'}), 201
    except SupabaseError as e:
        logger.error(f"Error creating user: {e.message}")
        return _platform_error(e, 'Kunde inte skapa användare')
    except Exception as e:
        logger.error(f"Error creating user: {e}")
        return jsonify({'error': 'Kunde inte skapa användare'}), 500


@app.route('/api/users/<user_id>', methods=['PUT'])
@require_auth
@require_superadmin
@rate_limit(max_requests=30, window_seconds=60)
def update_user(user_id):
    try:
        cleaned, errors = validate_user(request.get_json(silent=True) or {}, require_password=False)
        if errors:
            return _validation_error(errors)
        if not _db().update_user(user_id, cleaned):
            return jsonify({'error': 'Användaren kunde inte hittas'}), 404
        logger.info(f"User {current_user().get('id')} updated user {user_id}")
        return jsonify({'success': True, 'message': 'Användaren uppdaterad.'}), 200
    except SupabaseError as e:
        logger.error(f"Error updating user {user_id}: {e.message}")
        return _platform_error(e, 'Kunde inte uppdatera användaren')
    except Exception as e:
        logger.error(f"Error updating user {user_id}: {e}")
        return jsonify({'error': 'Kunde inte uppdatera användaren'}), 500


@app.route('/api/users/<user_id>', methods=['DELETE'])
@require_auth
@require_superadmin
@rate_limit(max_requests=30, window_seconds=60)
def delete_user(user_id):
    try:
        if not _confirmed():
            return _confirm_required('Är du säker på att du vill ta bort denna användare?')
        if not _db().delete_user(user_id):
            return jsonify({'error': 'Användaren kunde inte hittas'}), 404
        logger.info(f"User {current_user().get('id')} deleted user {user_id}")
        return jsonify({'success': True}), 200
    except SupabaseError as e:
        logger.error(f"Error deleting user {user_id}: {e.message}")
        return _platform_error(e, 'Kunde inte ta bort användaren')
    except Exception as e:
        logger.error(f"Error deleting user {user_id}: {e}")
        return jsonify({'error': 'Kunde inte ta bort användaren'}), 500

# ---- Fastigheter ----

@app.route('/api/fastigheter')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def get_fastigheter():
    try:
        return jsonify(_db().get_all_fastigheter()), 200
    except SupabaseError as e:
        logger.error(f"Error fetching fastigheter: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching fastigheter: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/fastigheter/<fastighet_id>')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def get_fastighet(fastighet_id):
    try:
        fastighet = _db().get_fastighet(fastighet_id)
        if not fastighet:
            return jsonify({'error': 'Fastigheten kunde inte hittas'}), 404
        return jsonify(fastighet), 200
    except SupabaseError as e:
        logger.error(f"Error fetching fastighet {fastighet_id}: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching fastighet {fastighet_id}: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/fastigheter', methods=['POST'])
@require_auth
@require_admin
@rate_limit(max_requests=60, window_seconds=60)
def add_fastighet():
    try:
        bild = None
        if request.mimetype == 'multipart/form-data':
            data = request.form.to_dict()
            data['typ'] = request.form.getlist('typ')
            bild = request.files.get('bild')
        else:
            data = request.get_json(silent=True)
            if not data:
                return jsonify({'error': 'Ingen data mottogs.'}), 400

        cleaned, errors = validate_fastighet(data)
        if bild and bild.filename and not (bild.mimetype or '').startswith('image/'):
            errors.append('Bilden måste vara en bildfil.')
        if errors:
            return _validation_error(errors)

        db = _db()
        if bild and bild.filename:
            cleaned['bild_url'] = db.upload_fastighet_image(bild.filename, bild.read(), bild.mimetype)

        try:
            fastighet_id = db.add_fastighet(cleaned)
        except SupabaseError:
            if cleaned.get('bild_url'):
                # Ingen rollback av uppladdad bild
                logger.warning(f"Fastighet insert failed, orphaned image left at {cleaned['bild_url']}")
            raise

        logger.info(f"User {current_user().get('id')} added fastighet '{fastighet_id}'.")
        return jsonify({
            'success': True,
            'id': fastighet_id,
            'bild_url': cleaned.get('bild_url'),
            'message': 'Fastighet sparad!'
        }), 201
    except SupabaseError as e:
        logger.error(f"Error adding fastighet: {e.message}")
        return _platform_error(e, 'Ett fel uppstod')
    except Exception as e:
        logger.error(f"Error adding fastighet: {e}")
        return jsonify({'error': 'Ett fel uppstod'}), 500

# ---- Byggnader ----

@app.route('/api/byggnader')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def get_byggnader():
    try:
        return jsonify(_db().get_all_byggnader()), 200
    except SupabaseError as e:
        logger.error(f"Error fetching byggnader: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching byggnader: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/byggnader/<byggnad_id>')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def get_byggnad(byggnad_id):
    try:
        byggnad = _db().get_byggnad(byggnad_id)
        if not byggnad:
            return jsonify({'error': 'Byggnaden kunde inte hittas'}), 404
        return jsonify(byggnad), 200
    except SupabaseError as e:
        logger.error(f"Error fetching byggnad {byggnad_id}: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching byggnad {byggnad_id}: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/byggnader', methods=['POST'])
@require_auth
@require_admin
@rate_limit(max_requests=60, window_seconds=60)
def add_byggnad():
    try:
        cleaned, errors = validate_byggnad(request.get_json(silent=True) or {})
        if errors:
            return _validation_error(errors)

        byggnad_id = _db().add_byggnad(cleaned)
        logger.info(f"User {current_user().get('id')} added byggnad '{byggnad_id}'.")
        return jsonify({'success': True, 'id': byggnad_id, 'message': 'Byggnad sparad!'}), 201
    except SupabaseError as e:
        logger.error(f"Error adding byggnad: {e.message}")
        return _platform_error(e, 'Ett fel uppstod')
    except Exception as e:
        logger.error(f"Error adding byggnad: {e}")
        return jsonify({'error': 'Ett fel uppstod'}), 500

# ---- Byggnadsobjekt ----

@app.route('/api/objekt')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def get_all_objekt():
    try:
        return jsonify(_db().get_all_objekt()), 200
    except SupabaseError as e:
        logger.error(f"Error fetching objekt: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching objekt: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/objekt/<objekt_id>')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def get_objekt(objekt_id):
    try:
        objekt = _db().get_objekt(objekt_id)
        if not objekt:
            return jsonify({'error': 'Objektet kunde inte hittas'}), 404
        return jsonify(objekt), 200
    except SupabaseError as e:
        logger.error(f"Error fetching objekt {objekt_id}: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error fetching objekt {objekt_id}: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/objekt', methods=['POST'])
@require_auth
@require_admin
@rate_limit(max_requests=60, window_seconds=60)
def add_objekt():
    try:
        data = request.get_json(silent=True) or {}
        cleaned, errors = validate_objekt(data)
        if errors:
            return _validation_error(errors)

        db = _db()
        fastighet_id = (data.get('fastighet_id') or '').strip()
        if fastighet_id:
            byggnad = db.get_byggnad(cleaned['byggnad_id'])
            if not byggnad:
                return jsonify({'error': 'Byggnaden kunde inte hittas'}), 404
            if byggnad.get('fastighet_id') != fastighet_id:
                return jsonify({'error': 'Byggnaden tillhör inte vald fastighet.'}), 400

        objekt_id = db.add_objekt(cleaned)
        logger.info(f"User {current_user().get('id')} added objekt '{objekt_id}'.")
        return jsonify({'success': True, 'id': objekt_id, 'message': 'Byggnadsobjekt sparat!'}), 201
    except SupabaseError as e:
        logger.error(f"Error adding objekt: {e.message}")
        return _platform_error(e, 'Ett fel uppstod')
    except Exception as e:
        logger.error(f"Error adding objekt: {e}")
        return jsonify({'error': 'Ett fel uppstod'}), 500


@app.route('/api/objekt/<objekt_id>', methods=['DELETE'])
@require_auth
@require_admin
@rate_limit(max_requests=60, window_seconds=60)
def delete_objekt(objekt_id):
    try:
        db = _db()
        objekt = db.get_objekt(objekt_id)
        if not objekt:
            return jsonify({'error': 'Objektet kunde inte hittas'}), 404
        if not _confirmed():
            namn = objekt.get('namn') or 'objektet'
            return _confirm_required(f'Är du säker på att du vill ta bort objektet "{namn}"? Detta går inte att ångra.')

        if not db.delete_objekt(objekt_id):
            return jsonify({'error': 'Objektet kunde inte hittas'}), 404
        logger.info(f"User {current_user().get('id')} deleted objekt '{objekt_id}'.")
        return jsonify({'success': True}), 200
    except SupabaseError as e:
        logger.error(f"Error deleting objekt {objekt_id}: {e.message}")
        return _platform_error(e, 'Kunde inte ta bort objektet')
    except Exception as e:
        logger.error(f"Error deleting objekt {objekt_id}: {e}")
        return jsonify({'error': 'Kunde inte ta bort objektet'}), 500

# ---- Tilldelning av skötare ----

def _levels_from(source):
    source = source or {}
    return {level: str(source.get(level) or '').strip() for level in LEVELS if source.get(level)}


def _load_selection(niva, presets, values=None):
    """Återskapa kaskadvalet och ladda listorna.

    Returnerar (selection, skotare, status) där status gäller om laddningen misslyckades.
    """
    selection = CascadingSelection.restore(niva, presets, values)
    try:
        options = _db().get_selection_options(niva)
    except SupabaseError as e:
        logger.error(f"Error loading selection options for {niva}: {e.message}")
        selection.fail(e.message)
        return selection, [], 400 if e.is_client_error else 500
    selection.load(options)
    return selection, options.get('skotare') or [], None


def _staff_options(staff):
    return [{'value': s.get('id'), 'label': staff_label(s, s.get('id') or '')} for s in staff]


def _unknown_level():
    return jsonify({'error': 'Okänd nivå'}), 404


@app.route('/api/tilldelning/<niva>')
@require_auth
@rate_limit(max_requests=300, window_seconds=60)
def mount_tilldelning(niva):
    if niva not in LEVELS:
        return _unknown_level()
    try:
        selection, staff, status = _load_selection(niva, _levels_from(request.args))
        if selection.error:
            return jsonify({'error': selection.error, 'selection': selection.snapshot()}), status

        assignments = AssignmentSet(_db(), niva)
        assignments.select_subject(selection.subject_id)
        return jsonify({
            'selection': selection.snapshot(),
            'skotare': _staff_options(staff),
            'assignments': assignments.snapshot(staff),
        }), 200
    except Exception as e:
        logger.error(f"Error mounting tilldelning {niva}: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/tilldelning/<niva>/val', methods=['POST'])
@require_auth
@rate_limit(max_requests=600, window_seconds=60)
def choose_tilldelning(niva):
    if niva not in LEVELS:
        return _unknown_level()
    try:
        body = request.get_json(silent=True) or {}
        selection, staff, status = _load_selection(niva, _levels_from(body.get('presets')), _levels_from(body.get('values')))
        if selection.error:
            return jsonify({'error': selection.error, 'selection': selection.snapshot()}), status

        try:
            changed = selection.choose(body.get('level'), body.get('id'))
        except SelectionError as e:
            return jsonify({'error': str(e), 'selection': selection.snapshot()}), 400

        assignments = AssignmentSet(_db(), niva)
        assignments.select_subject(selection.subject_id)
        return jsonify({
            'changed': changed,
            'selection': selection.snapshot(),
            'assignments': assignments.snapshot(staff),
        }), 200
    except Exception as e:
        logger.error(f"Error choosing in tilldelning {niva}: {e}")
        return jsonify({'error': 'Kunde inte uppdatera valet'}), 500


@app.route('/api/tilldelning/<niva>/<subject_id>')
@require_auth
@rate_limit(max_requests=600, window_seconds=60)
def list_tilldelningar(niva, subject_id):
    if niva not in LEVELS:
        return _unknown_level()
    try:
        db = _db()
        assignments = AssignmentSet(db, niva)
        assignments.select_subject(subject_id)
        if assignments.error:
            return jsonify(assignments.snapshot()), assignments.error_status or 500
        return jsonify(assignments.snapshot(db.list_users())), 200
    except SupabaseError as e:
        logger.error(f"Error listing tilldelningar for {niva} {subject_id}: {e.message}")
        return _platform_error(e, 'Kunde inte hämta data.')
    except Exception as e:
        logger.error(f"Error listing tilldelningar for {niva} {subject_id}: {e}")
        return jsonify({'error': 'Kunde inte hämta data.'}), 500


@app.route('/api/tilldelning/<niva>', methods=['POST'])
@require_auth
@require_admin
@rate_limit(max_requests=60, window_seconds=60)
def add_tilldelning(niva):
    if niva not in LEVELS:
        return _unknown_level()
    try:
        body = request.get_json(silent=True) or {}
        wanted = _levels_from(body.get('values'))
        presets = _levels_from(body.get('presets'))
        skotare_ids = body.get('skotare_ids') or []
        if isinstance(skotare_ids, str):
            skotare_ids = [skotare_ids]
        skotare_ids = [str(s).strip() for s in skotare_ids if s and str(s).strip()]

        # Subjektet måste vara uttryckligen valt av klienten, inget förstaval
        if not skotare_ids or not (wanted.get(niva) or presets.get(niva)):
            return jsonify({'error': missing_choice_message(niva)}), 400

        selection, staff, status = _load_selection(niva, presets, wanted)
        if selection.error:
            return jsonify({'error': selection.error, 'selection': selection.snapshot()}), status

        # Kontrollera att valet fortfarande hänger ihop nivå för nivå
        requested = dict(presets, **wanted)
        for level in levels_for(niva):
            if requested.get(level) and requested[level] != selection.values[level]:
                logger.warning(f"Rejected tilldelning: {level}={requested[level]} not under chosen parent")
                return jsonify({
                    'error': 'Valet hör inte ihop med vald fastighet eller byggnad.',
                    'selection': selection.snapshot()
                }), 400

        assignments = AssignmentSet(_db(), niva)
        assignments.select_subject(selection.subject_id)
        ok = assignments.add(skotare_ids, overwrite=body.get('overwrite') is True)
        payload = {'selection': selection.snapshot(), 'assignments': assignments.snapshot(staff)}
        if not ok:
            payload['error'] = assignments.error
            return jsonify(payload), assignments.error_status or 500

        logger.info(f"User {current_user().get('id')} updated skötare on {niva} {selection.subject_id}")
        return jsonify(payload), 200
    except Exception as e:
        logger.error(f"Error adding tilldelning for {niva}: {e}")
        return jsonify({'error': 'Något gick fel vid kopplingen.'}), 500


@app.route('/api/tilldelning/<niva>/<subject_id>/<skotare_id>', methods=['DELETE'])
@require_auth
@require_admin
@rate_limit(max_requests=60, window_seconds=60)
def remove_tilldelning(niva, subject_id, skotare_id):
    if niva not in LEVELS:
        return _unknown_level()
    try:
        assignments = AssignmentSet(_db(), niva)
        assignments.select_subject(subject_id)
        if not assignments.remove(skotare_id):
            return jsonify(assignments.snapshot()), assignments.error_status or 500
        logger.info(f"User {current_user().get('id')} removed skötare {skotare_id} from {niva} {subject_id}")
        return jsonify(assignments.snapshot()), 200
    except Exception as e:
        logger.error(f"Error removing tilldelning {niva} {subject_id}/{skotare_id}: {e}")
        return jsonify({'error': 'Kunde inte ta bort skötare.'}), 500

def _serve_client(path):
    path = path.lstrip('/')
    # Existerande fil i static-mappen (t.ex. manifest.json, logo.png)
    if path != "" and os.path.isfile(os.path.join(app.static_folder, path)):
        return send_from_directory(app.static_folder, path)

    if path == 'api' or path.startswith('api/'):
        return jsonify({'error': 'API endpoint not found'}), 404

    target = resolve_client_path(path, authenticated='user' in session)
    if target:
        return redirect(target)

    # React Router visar rätt komponent
    return send_from_directory(app.static_folder, 'index.html')

# Serve React App
@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
def serve(path):
    return _serve_client(path)

# Error handlers
@app.errorhandler(429)
def rate_limit_handler(e):
    return jsonify({'error': 'För många förfrågningar. Vänta en stund.'}), 429

@app.errorhandler(500)
def internal_error_handler(e):
    logger.error(f"Internal server error: {str(e)}")
    return jsonify({'error': 'Ett serverfel uppstod'}), 500

@app.errorhandler(413)
def too_large_handler(e):
    return jsonify({'error': 'Filen är för stor (max 10 MB).'}), 413

@app.errorhandler(404)
def not_found_handler(e):
    # Statiska rutten '/<path:filename>' fångar även klientrutter; låt dem gå samma väg som serve()
    return _serve_client(request.path)

@app.errorhandler(405)
def method_not_allowed_handler(e):
    if request.path.startswith('/api/'):
        return jsonify({'error': 'Endpoint hittades inte'}), 404
    return jsonify({'error': 'Metoden är inte tillåten'}), 405

if __name__ == '__main__':
    # ALDRIG debug=True i produktion!
    app.run(debug=False, port=10000)
