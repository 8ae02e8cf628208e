import os
import time
import copy
from datetime import datetime

import pytest

# Måste sättas innan app importeras
os.environ['SUPABASE_URL'] = 'https://test-project.supabase.co'
os.environ['SUPABASE_ANON_KEY'] = 'anon-test-key'
os.environ['SUPABASE_SERVICE_ROLE_KEY'] = 'service-test-key'
os.environ.setdefault('SECRET_KEY', 'test-secret-key')
os.environ['FLASK_ENV'] = 'development'
os.environ.pop('SUPABASE_JWT_SECRET', None)
os.environ.pop('SESSION_TYPE', None)

from supabase_service import ASSIGNMENT_TABLES, SupabaseError  # noqa: E402
from security import rate_limiter  # noqa: E402


class FakeSupabase:
    """In-memory ersättare för SupabaseService med samma metoder."""

    def __init__(self):
        self.fastigheter = []
        self.byggnader = []
        self.objekt = []
        self.users = []
        self.links = {level: [] for level in ASSIGNMENT_TABLES}
        self.auth_users = {}
        self.passwords = {}
        self.uploads = []
        self.calls = []
        self.fail = {}
        self._next_id = 0

    # ---- hjälp ----
    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def _new_id(self, prefix):
        self._next_id += 1
        return f'{prefix}-{self._next_id}'

    def with_token(self, access_token):
        return self

    def add_auth_user(self, profile, password='hemligt123'):
        auth_user = {
            'id': profile['id'],
            'email': profile['email'],
            'user_metadata': {k: profile.get(k) for k in ('fornamn', 'efternamn', 'roll', 'adress')},
        }
        self.auth_users[f"token-{profile['id']}"] = auth_user
        self.passwords[profile['email']] = (password, auth_user)
        return auth_user

    # ---- listor ----
    def get_selection_options(self, depth='objekt'):
        self._call('get_selection_options', depth)
        options = {
            'fastighet': [{k: f.get(k) for k in ('id', 'namn', 'adress')} for f in self.fastigheter],
            'byggnad': [],
            'objekt': [],
        }
        if depth in ('byggnad', 'objekt'):
            options['byggnad'] = [{k: b.get(k) for k in ('id', 'namn', 'fastighet_id')} for b in self.byggnader]
        if depth == 'objekt':
            options['objekt'] = [{k: o.get(k) for k in ('id', 'namn', 'byggnad_id')} for o in self.objekt]
        options['skotare'] = [{k: u.get(k) for k in ('id', 'fornamn', 'efternamn', 'email')} for u in self.users]
        return options

    # ---- tilldelningar ----
    def list_assignments(self, level, subject_id):
        self._call('list_assignments', level, subject_id)
        column = ASSIGNMENT_TABLES[level][1]
        return [dict(row) for row in self.links[level] if row[column] == subject_id]

    def upsert_assignments(self, level, rows):
        self._call('upsert_assignments', level, rows)
        column = ASSIGNMENT_TABLES[level][1]
        existing = {(row[column], row['skotare_id']) for row in self.links[level]}
        for row in rows:
            key = (row[column], row['skotare_id'])
            if key not in existing:
                self.links[level].append(dict(row))
                existing.add(key)

    def delete_assignments(self, level, subject_id):
        self._call('delete_assignments', level, subject_id)
        column = ASSIGNMENT_TABLES[level][1]
        self.links[level] = [row for row in self.links[level] if row[column] != subject_id]

    def delete_assignment(self, level, subject_id, skotare_id):
        self._call('delete_assignment', level, subject_id, skotare_id)
        column = ASSIGNMENT_TABLES[level][1]
        self.links[level] = [
            row for row in self.links[level]
            if not (row[column] == subject_id and row['skotare_id'] == skotare_id)
        ]

    def _staff_for(self, level, subject_id):
        column = ASSIGNMENT_TABLES[level][1]
        ids = [row['skotare_id'] for row in self.links[level] if row[column] == subject_id]
        return [{k: u.get(k) for k in ('id', 'fornamn', 'efternamn', 'email')} for u in self.users if u['id'] in ids]

    # ---- fastigheter ----
    def get_all_fastigheter(self):
        self._call('get_all_fastigheter')
        rows = sorted(self.fastigheter, key=lambda f: f.get('kvarter') or '')
        return [dict(f, skotare=self._staff_for('fastighet', f['id'])) for f in rows]

    def get_fastighet(self, fastighet_id):
        self._call('get_fastighet', fastighet_id)
        for f in self.fastigheter:
            if f['id'] == fastighet_id:
                byggnader = [
                    dict(b, skotare=self._staff_for('byggnad', b['id']))
                    for b in self.byggnader if b['fastighet_id'] == fastighet_id
                ]
                return dict(f, skotare=self._staff_for('fastighet', fastighet_id), byggnader=byggnader)
        return None

    def add_fastighet(self, data):
        self._call('add_fastighet', data)
        row = dict(data, id=self._new_id('fastighet'))
        self.fastigheter.append(row)
        return row['id']

    def upload_fastighet_image(self, filename, content, content_type=None):
        self._call('upload_fastighet_image', filename)
        self.uploads.append((filename, content, content_type))
        return f'https://test-project.supabase.co/storage/v1/object/public/fastigheter/{filename}'

    # ---- byggnader ----
    def get_all_byggnader(self):
        self._call('get_all_byggnader')
        return [dict(b, skotare=self._staff_for('byggnad', b['id'])) for b in self.byggnader]

    def get_byggnad(self, byggnad_id):
        self._call('get_byggnad', byggnad_id)
        for b in self.byggnader:
            if b['id'] == byggnad_id:
                objekt = [dict(o) for o in self.objekt if o['byggnad_id'] == byggnad_id]
                return dict(b, skotare=self._staff_for('byggnad', byggnad_id), objekt=objekt)
        return None

    def add_byggnad(self, data):
        self._call('add_byggnad', data)
        row = dict(data, id=self._new_id('byggnad'))
        self.byggnader.append(row)
        return row['id']

    # ---- objekt ----
    def get_all_objekt(self):
        self._call('get_all_objekt')
        return [dict(o, skotare=self._staff_for('objekt', o['id'])) for o in self.objekt]

    def get_objekt(self, objekt_id):
        self._call('get_objekt', objekt_id)
        for o in self.objekt:
            if o['id'] == objekt_id:
                return dict(o, skotare=self._staff_for('objekt', objekt_id))
        return None

    def add_objekt(self, data):
        self._call('add_objekt', data)
        row = dict(data, id=self._new_id('objekt'))
        self.objekt.append(row)
        return row['id']

    def delete_objekt(self, objekt_id):
        self._call('delete_objekt', objekt_id)
        before = len(self.objekt)
        self.objekt = [o for o in self.objekt if o['id'] != objekt_id]
        return len(self.objekt) < before

    # ---- användare ----
    def list_users(self):
        self._call('list_users')
        return copy.deepcopy(self.users)

    def get_user(self, user_id):
        self._call('get_user', user_id)
        return next((dict(u) for u in self.users if u['id'] == user_id), None)

    def get_user_by_email(self, email):
        self._call('get_user_by_email', email)
        return next((dict(u) for u in self.users if u['email'] == email), None)

    def add_user(self, row):
        self._call('add_user', row)
        self.users.append(dict(row))
        return row['id']

    def update_user(self, user_id, values):
        self._call('update_user', user_id, values)
        for u in self.users:
            if u['id'] == user_id:
                u.update(values)
                return True
        return False

    def delete_user(self, user_id):
        self._call('delete_user', user_id)
        before = len(self.users)
        self.users = [u for u in self.users if u['id'] != user_id]
        return len(self.users) < before

    # ---- auth ----
    def sign_in_with_password(self, email, password):
        self._call('sign_in_with_password', email)
        stored = self.passwords.get(email)
        if not stored or stored[0] != password:
            raise SupabaseError('Invalid login credentials', 400)
        auth_user = stored[1]
        return {
            'access_token': f"token-{auth_user['id']}",
            'refresh_token': f"refresh-{auth_user['id']}",
            'expires_in': 3600,
            'user': dict(auth_user),
        }

    def refresh_session(self, refresh_token):
        self._call('refresh_session', refresh_token)
        user_id = refresh_token.replace('refresh-', '', 1)
        return {
            'access_token': f'token-{user_id}',
            'refresh_token': f'refresh-{user_id}',
            'expires_in': 3600,
        }

    def get_auth_user(self, access_token):
        self._call('get_auth_user', access_token)
        if access_token not in self.auth_users:
            raise SupabaseError('invalid JWT', 401)
        return dict(self.auth_users[access_token])

    def sign_out(self, access_token):
        self._call('sign_out', access_token)

    def reset_password_for_email(self, email, redirect_to=None):
        self._call('reset_password_for_email', email, redirect_to)

    def update_password(self, access_token, password):
        self._call('update_password', access_token)
        if access_token not in self.auth_users:
            raise SupabaseError('Auth session missing!', 401)
        return dict(self.auth_users[access_token])

    def admin_create_user(self, email, password, metadata=None):
        self._call('admin_create_user', email, metadata)
        if email in self.passwords:
            raise SupabaseError('A user with this email address has already been registered', 422)
        user_id = self._new_id('user')
        auth_user = {'id': user_id, 'email': email, 'user_metadata': metadata or {}}
        self.auth_users[f'token-{user_id}'] = auth_user
        self.passwords[email] = (password, auth_user)
        return dict(auth_user)


def seeded_fake():
    fake = FakeSupabase()
    fake.fastigheter = [
        {'id': 'P1', 'namn': 'Almgården', 'adress': 'Storgatan 1', 'kvarter': 'Lönnen', 'typ': ['bostad']},
        {'id': 'P2', 'namn': 'Björkhagen', 'adress': 'Lillgatan 2', 'kvarter': 'Eken', 'typ': ['kommersiell']},
    ]
    fake.byggnader = [
        {'id': 'B1', 'namn': 'Hus 1', 'fastighet_id': 'P1', 'typ': 'bostad'},
        {'id': 'B2', 'namn': 'Hus 2', 'fastighet_id': 'P1', 'typ': 'bostad'},
        {'id': 'B7', 'namn': 'Hus 7', 'fastighet_id': 'P2', 'typ': 'kontor'},
    ]
    fake.objekt = [
        {'id': 'O1', 'namn': 'Lgh 1001', 'byggnad_id': 'B1', 'typ': 'lägenhet'},
        {'id': 'O2', 'namn': 'Förråd 3', 'byggnad_id': 'B1', 'typ': 'förråd'},
        {'id': 'O9', 'namn': 'Lgh 9', 'byggnad_id': 'B7', 'typ': 'lägenhet'},
    ]
    fake.users = [
        {'id': 'U-super', 'fornamn': 'Sara', 'efternamn': 'Admin', 'email': 'super@example.se', 'roll': 'superadmin', 'adress': None},
        {'id': 'U-admin', 'fornamn': 'Adam', 'efternamn': 'Berg', 'email': 'admin@example.se', 'roll': 'admin', 'adress': None},
        {'id': 'U-user', 'fornamn': 'Ulla', 'efternamn': 'Dahl', 'email': 'user@example.se', 'roll': 'user', 'adress': None},
        {'id': 'S1', 'fornamn': 'Anna', 'efternamn': 'Ek', 'email': 'anna@example.se', 'roll': 'user', 'adress': None},
        {'id': 'S2', 'fornamn': 'Bo', 'efternamn': 'Falk', 'email': 'bo@example.se', 'roll': 'user', 'adress': None},
    ]
    for user in fake.users[:3]:
        fake.add_auth_user(user)
    return fake


@pytest.fixture
def fake():
    return seeded_fake()


@pytest.fixture
def app(fake, tmp_path):
    from app import app as flask_app

    (tmp_path / 'index.html').write_text('<!doctype html><div id="root"></div>')
    previous = flask_app.extensions['supabase'], flask_app.static_folder
    flask_app.config['TESTING'] = True
    flask_app.extensions['supabase'] = fake
    flask_app.static_folder = str(tmp_path)
    rate_limiter.reset()
    yield flask_app
    flask_app.extensions['supabase'], flask_app.static_folder = previous


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_as(client, fake):
    """Lägg en inloggad användare i sessionen utan att gå via /api/login."""
    def _login(user_id='U-super'):
        user = next(u for u in fake.users if u['id'] == user_id)
        with client.session_transaction() as sess:
            sess['user'] = dict(user)
            sess['access_token'] = f'token-{user_id}'
            sess['refresh_token'] = f'refresh-{user_id}'
            sess['expires_at'] = int(time.time()) + 3600
            sess['login_time'] = datetime.now().isoformat()
        return user
    return _login
