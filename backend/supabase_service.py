import os
import copy
import time
import logging
from uuid import uuid4
from typing import Optional, List, Dict, Any

import requests
from requests import RequestException
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

# Kopplingstabell och subjektkolumn per nivå i hierarkin
ASSIGNMENT_TABLES = {
    'fastighet': ('fastighet_skotare', 'fastighet_id'),
    'byggnad': ('byggnad_skotare', 'byggnad_id'),
    'objekt': ('byggnad_objekt_skotare', 'objekt_id'),
}

SKOTARE_EMBED = 'skotare_id(id,fornamn,efternamn,email)'


class SupabaseError(Exception):
    """Fel från Supabase (PostgREST, GoTrue eller Storage).

    `message` är plattformens egen text och visas oförändrad för användaren.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500


def _one(value):
    # PostgREST kan returnera en inbäddad relation som objekt eller lista
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _staff_from_links(links) -> List[Dict]:
    staff = (_one(link.get('skotare_id')) for link in links or [] if isinstance(link, dict))
    return [s for s in staff if s]


def _error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ('message', 'msg', 'error_description', 'error'):
            if body.get(key):
                return str(body[key])
    text = (response.text or '').strip()
    return text or f'{response.status_code} {response.reason}'


class SupabaseService:
    def __init__(self, access_token: Optional[str] = None):
        self.url = (os.getenv('SUPABASE_URL') or '').strip().rstrip('/')
        self.anon_key = (os.getenv('SUPABASE_ANON_KEY') or '').strip()
        self.service_key = (os.getenv('SUPABASE_SERVICE_ROLE_KEY') or '').strip()
        self.bucket = os.getenv('SUPABASE_STORAGE_BUCKET', 'fastigheter')
        if not self.url or not self.anon_key:
            raise RuntimeError('SUPABASE_URL and SUPABASE_ANON_KEY must be set')
        try:
            self.timeout = float(os.getenv('SUPABASE_TIMEOUT_SECONDS', '10'))
        except ValueError:
            self.timeout = 10.0
        self.access_token = access_token
        self.http = requests.Session()

    def with_token(self, access_token: Optional[str]) -> 'SupabaseService':
        """Kopia som anropar PostgREST som den inloggade användaren (RLS)."""
        clone = copy.copy(self)
        clone.access_token = access_token
        return clone

    def _request(self, method: str, path: str, *, params=None, json=None, data=None,
                 headers=None, admin: bool = False, token: Optional[str] = None) -> Any:
        if admin and not self.service_key:
            raise SupabaseError('SUPABASE_SERVICE_ROLE_KEY saknas', 500)
        api_key = self.service_key if admin else self.anon_key
        bearer = api_key if admin else (token or self.access_token or api_key)
        request_headers = {'apikey': api_key, 'Authorization': f'Bearer {bearer}'}
        if headers:
            request_headers.update(headers)

        try:
            response = self.http.request(
                method,
                f'{self.url}{path}',
                params=params,
                json=json,
                data=data,
                headers=request_headers,
                timeout=self.timeout,
            )
        except RequestException as exc:
            logger.error(f"Supabase unreachable ({method} {path}): {exc}")
            raise SupabaseError(f'Kunde inte nå Supabase: {exc}') from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(f"Supabase {method} {path} failed: {response.status_code} {message}")
            raise SupabaseError(message, response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise SupabaseError('Supabase returnerade ett ogiltigt svar', response.status_code) from exc

    # ---- PostgREST ----
    def _select(self, table: str, columns: str = '*', *, filters: Optional[Dict] = None,
                order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict]:
        params = {'select': columns}
        params.update(filters or {})
        if order:
            params['order'] = order
        if limit:
            params['limit'] = str(limit)
        return self._request('GET', f'/rest/v1/{table}', params=params) or []

    def _select_one(self, table: str, columns: str, row_id: str) -> Optional[Dict]:
        if not row_id:
            return None
        rows = self._select(table, columns, filters={'id': f'eq.{row_id}'}, limit=1)
        return rows[0] if rows else None

    def _insert(self, table: str, rows: List[Dict]) -> List[Dict]:
        return self._request(
            'POST', f'/rest/v1/{table}',
            json=rows,
            headers={'Prefer': 'return=representation'},
        ) or []

    def _update(self, table: str, filters: Dict, values: Dict) -> List[Dict]:
        return self._request(
            'PATCH', f'/rest/v1/{table}',
            params=filters,
            json=values,
            headers={'Prefer': 'return=representation'},
        ) or []

    def _delete(self, table: str, filters: Dict) -> List[Dict]:
        if not filters:
            raise ValueError('delete without filters')
        return self._request(
            'DELETE', f'/rest/v1/{table}',
            params=filters,
            headers={'Prefer': 'return=representation'},
        ) or []

    # ---- Valbara listor för tilldelningsformulären ----
    def get_selection_options(self, depth: str = 'objekt') -> Dict[str, List[Dict]]:
        options = {
            'fastighet': self._select('fastigheter', 'id,namn,adress', order='namn.asc'),
            'byggnad': [],
            'objekt': [],
        }
        if depth in ('byggnad', 'objekt'):
            options['byggnad'] = self._select('byggnader', 'id,namn,fastighet_id', order='namn.asc')
        if depth == 'objekt':
            options['objekt'] = self._select('byggnad_objekt', 'id,namn,byggnad_id', order='namn.asc')
        options['skotare'] = self._select('fastighets_users', 'id,fornamn,efternamn,email', order='efternamn.asc')
        return options

    # ---- Tilldelningar ----
    def list_assignments(self, level: str, subject_id: str) -> List[Dict]:
        table, column = ASSIGNMENT_TABLES[level]
        if not subject_id:
            return []
        return self._select(
            table, f'{column},skotare_id,tilldelad_datum',
            filters={column: f'eq.{subject_id}'},
        )

    def upsert_assignments(self, level: str, rows: List[Dict]) -> None:
        table, column = ASSIGNMENT_TABLES[level]
        if not rows:
            return
        # Kräver PK (subjekt, skotare_id); dubbletter ignoreras
        self._request(
            'POST', f'/rest/v1/{table}',
            params={'on_conflict': f'{column},skotare_id'},
            json=rows,
            headers={'Prefer': 'resolution=ignore-duplicates,return=minimal'},
        )

    def delete_assignments(self, level: str, subject_id: str) -> None:
        table, column = ASSIGNMENT_TABLES[level]
        self._delete(table, {column: f'eq.{subject_id}'})

    def delete_assignment(self, level: str, subject_id: str, skotare_id: str) -> None:
        table, column = ASSIGNMENT_TABLES[level]
        self._delete(table, {column: f'eq.{subject_id}', 'skotare_id': f'eq.{skotare_id}'})

    # ---- Fastigheter ----
    def get_all_fastigheter(self) -> List[Dict]:
        rows = self._select(
            'fastigheter', f'*,fastighet_skotare({SKOTARE_EMBED})', order='kvarter.asc'
        )
        for row in rows:
            row['skotare'] = _staff_from_links(row.pop('fastighet_skotare', None))
        return rows

    def get_fastighet(self, fastighet_id: str) -> Optional[Dict]:
        fastighet = self._select_one(
            'fastigheter', f'*,fastighet_skotare({SKOTARE_EMBED})', fastighet_id
        )
        if not fastighet:
            return None
        fastighet['skotare'] = _staff_from_links(fastighet.pop('fastighet_skotare', None))
        byggnader = self._select(
            'byggnader',
            f'id,namn,typ,våningar,area,byggår,byggnad_skotare({SKOTARE_EMBED})',
            filters={'fastighet_id': f'eq.{fastighet_id}'},
            order='namn.asc',
        )
        for byggnad in byggnader:
            byggnad['skotare'] = _staff_from_links(byggnad.pop('byggnad_skotare', None))
        fastighet['byggnader'] = byggnader
        return fastighet

    def add_fastighet(self, data: Dict) -> Optional[str]:
        created = self._insert('fastigheter', [data])
        return created[0].get('id') if created else None

    def upload_fastighet_image(self, filename: str, content: bytes,
                               content_type: Optional[str] = None) -> str:
        """Laddar upp en bild och returnerar dess publika URL."""
        safe_name = secure_filename(filename or '') or 'bild'
        key = f'{int(time.time() * 1000)}_{uuid4().hex[:8]}_{safe_name}'
        self._request(
            'POST', f'/storage/v1/object/{self.bucket}/{key}',
            data=content,
            headers={
                'Content-Type': content_type or 'application/octet-stream',
                'Cache-Control': 'max-age=3600',
                'x-upsert': 'true',
            },
        )
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f'{self.url}/storage/v1/object/public/{self.bucket}/{key}'

    # ---- Byggnader ----
    def get_all_byggnader(self) -> List[Dict]:
        rows = self._select(
            'byggnader',
            'id,namn,typ,våningar,area,byggår,fastighet_id,'
            f'fastigheter(id,namn,adress),byggnad_skotare({SKOTARE_EMBED})',
            order='namn.asc',
        )
        for row in rows:
            row['fastigheter'] = _one(row.get('fastigheter'))
            row['skotare'] = _staff_from_links(row.pop('byggnad_skotare', None))
        return rows

    def get_byggnad(self, byggnad_id: str) -> Optional[Dict]:
        byggnad = self._select_one(
            'byggnader',
            'id,namn,typ,våningar,area,byggår,fastighet_id,fastigheter(id,namn,adress),'
            f'byggnad_skotare({SKOTARE_EMBED}),byggnad_objekt(id,namn,typ,plan,kvadratmeter)',
            byggnad_id,
        )
        if not byggnad:
            return None
        byggnad['fastigheter'] = _one(byggnad.get('fastigheter'))
        byggnad['skotare'] = _staff_from_links(byggnad.pop('byggnad_skotare', None))
        byggnad['objekt'] = byggnad.pop('byggnad_objekt', None) or []
        byggnad['objekt'].sort(key=lambda o: (o.get('namn') or '').lower())
        return byggnad

    def add_byggnad(self, data: Dict) -> Optional[str]:
        created = self._insert('byggnader', [data])
        return created[0].get('id') if created else None

    # ---- Byggnadsobjekt ----
    _OBJEKT_COLUMNS = (
        'id,namn,typ,plan,kvadratmeter,beskrivning,byggnad_id,'
        'byggnader(id,namn,fastighet_id,fastigheter(id,namn,adress)),'
        f'byggnad_objekt_skotare({SKOTARE_EMBED})'
    )

    def _normalize_objekt(self, row: Dict) -> Dict:
        byggnad = _one(row.get('byggnader'))
        if byggnad:
            byggnad['fastigheter'] = _one(byggnad.get('fastigheter'))
        row['byggnader'] = byggnad
        row['skotare'] = _staff_from_links(row.pop('byggnad_objekt_skotare', None))
        return row

    def get_all_objekt(self) -> List[Dict]:
        rows = self._select('byggnad_objekt', self._OBJEKT_COLUMNS, order='namn.asc')
        return [self._normalize_objekt(row) for row in rows]

    def get_objekt(self, objekt_id: str) -> Optional[Dict]:
        row = self._select_one('byggnad_objekt', self._OBJEKT_COLUMNS, objekt_id)
        return self._normalize_objekt(row) if row else None

    def add_objekt(self, data: Dict) -> Optional[str]:
        created = self._insert('byggnad_objekt', [data])
        return created[0].get('id') if created else None

    def delete_objekt(self, objekt_id: str) -> bool:
        if not objekt_id:
            return False
        return bool(self._delete('byggnad_objekt', {'id': f'eq.{objekt_id}'}))

    # ---- Användare / skötare ----
    def list_users(self) -> List[Dict]:
        return self._select('fastighets_users', 'id,fornamn,efternamn,email,adress,roll', order='efternamn.asc')

    def get_user(self, user_id: str) -> Optional[Dict]:
        return self._select_one('fastighets_users', 'id,fornamn,efternamn,email,adress,roll', user_id)

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        email_s = (email or '').strip()
        if not email_s:
            return None
        rows = self._select(
            'fastighets_users', 'id,fornamn,efternamn,email,adress,roll',
            filters={'email': f'eq.{email_s}'}, limit=1,
        )
        return rows[0] if rows else None

    def add_user(self, row: Dict) -> Optional[str]:
        created = self._insert('fastighets_users', [row])
        return created[0].get('id') if created else None

    def update_user(self, user_id: str, values: Dict) -> bool:
        if not user_id:
            return False
        return bool(self._update('fastighets_users', {'id': f'eq.{user_id}'}, values))

    def delete_user(self, user_id: str) -> bool:
        if not user_id:
            return False
        return bool(self._delete('fastighets_users', {'id': f'eq.{user_id}'}))

    # ---- Auth (GoTrue) ----
    def sign_in_with_password(self, email: str, password: str) -> Dict:
        return self._request(
            'POST', '/auth/v1/token',
            params={'grant_type': 'password'},
            json={'email': email, 'password': password},
            token=self.anon_key,
        ) or {}

    def refresh_session(self, refresh_token: str) -> Dict:
        return self._request(
            'POST', '/auth/v1/token',
            params={'grant_type': 'refresh_token'},
            json={'refresh_token': refresh_token},
            token=self.anon_key,
        ) or {}

    def get_auth_user(self, access_token: str) -> Dict:
        return self._request('GET', '/auth/v1/user', token=access_token) or {}

    def sign_out(self, access_token: str) -> None:
        self._request('POST', '/auth/v1/logout', token=access_token)

    def reset_password_for_email(self, email: str, redirect_to: Optional[str] = None) -> None:
        params = {'redirect_to': redirect_to} if redirect_to else None
        self._request('POST', '/auth/v1/recover', params=params, json={'email': email}, token=self.anon_key)

    def update_password(self, access_token: str, password: str) -> Dict:
        return self._request('PUT', '/auth/v1/user', json={'password': password}, token=access_token) or {}

    def admin_create_user(self, email: str, password: str, metadata: Optional[Dict] = None) -> Dict:
        created = self._request(
            'POST', '/auth/v1/admin/users',
            json={
                'email': email,
                'password': password,
                'email_confirm': True,
                'user_metadata': metadata or {},
            },
            admin=True,
        ) or {}
        # Äldre GoTrue-versioner svarar med {"user": {...}}
        return created.get('user') or created
