"""
Klientrutter för React-appen och panelerna som visas per roll på dashboarden.
"""
import re
from typing import Dict, List, Optional

PUBLIC_ROUTES = ('/login', '/forgot-password', '/reset-password')

# Dashboardens undersidor; <id> matchar ett godtyckligt id-segment
CLIENT_ROUTES = (
    '/dashboard',
    '/dashboard/users',
    '/dashboard/users/create',
    '/dashboard/users/<id>',
    '/dashboard/fastigheter',
    '/dashboard/fastigheter/create',
    '/dashboard/fastigheter/<id>',
    '/dashboard/byggnader',
    '/dashboard/byggnader/create',
    '/dashboard/byggnader/assign',
    '/dashboard/byggnader/<id>',
    '/dashboard/byggnadsobjekt',
    '/dashboard/byggnadsobjekt/create',
    '/dashboard/byggnadsobjekt/assign',
    '/dashboard/byggnadsobjekt/<id>',
    '/dashboard/objekt/<id>',
    # Tilldelningsformulären som detaljsidorna länkar till (?fastighet=..&byggnad=..&objekt=..)
    '/dashboard/tilldela/fastighet-skotare',
    '/dashboard/tilldela/byggnad-skotare',
    '/dashboard/tilldela/objekt-skotare',
)

PANELS = {
    'users': {'title': 'Användare', 'path': '/dashboard/users'},
    'create_user': {'title': 'Skapa användare', 'path': '/dashboard/users/create'},
    'fastigheter': {'title': 'Fastigheter', 'path': '/dashboard/fastigheter'},
    'create_fastighet': {'title': 'Ny fastighet', 'path': '/dashboard/fastigheter/create'},
    'assign_fastighet': {'title': 'Koppla skötare till fastighet', 'path': '/dashboard/tilldela/fastighet-skotare'},
    'byggnader': {'title': 'Byggnader', 'path': '/dashboard/byggnader'},
    'create_byggnad': {'title': 'Ny byggnad', 'path': '/dashboard/byggnader/create'},
    'assign_byggnad': {'title': 'Koppla skötare till byggnad', 'path': '/dashboard/byggnader/assign'},
    'objekt': {'title': 'Byggnadsobjekt', 'path': '/dashboard/byggnadsobjekt'},
    'create_objekt': {'title': 'Nytt objekt', 'path': '/dashboard/byggnadsobjekt/create'},
    'assign_objekt': {'title': 'Koppla skötare till objekt', 'path': '/dashboard/byggnadsobjekt/assign'},
}

ROLE_PANELS = {
    'superadmin': [
        'users', 'create_user',
        'fastigheter', 'create_fastighet', 'assign_fastighet',
        'byggnader', 'create_byggnad', 'assign_byggnad',
        'objekt', 'create_objekt', 'assign_objekt',
    ],
    'admin': [
        'users',
        'fastigheter', 'create_fastighet', 'assign_fastighet',
        'byggnader', 'create_byggnad', 'assign_byggnad',
        'objekt', 'create_objekt', 'assign_objekt',
    ],
    'user': ['fastigheter', 'byggnader', 'objekt'],
}


def _compile(route: str):
    pattern = re.escape(route).replace(re.escape('<id>'), r'[^/]+')
    return re.compile(f'^{pattern}$')


_CLIENT_PATTERNS = [_compile(route) for route in CLIENT_ROUTES]


def panels_for(role: Optional[str]) -> List[Dict]:
    keys = ROLE_PANELS.get(role or '', ROLE_PANELS['user'])
    return [dict(PANELS[key], key=key) for key in keys]


def is_client_route(path: str) -> bool:
    path = '/' + (path or '').strip('/')
    return path in PUBLIC_ROUTES or any(p.match(path) for p in _CLIENT_PATTERNS)


def resolve_client_path(path: str, authenticated: bool) -> Optional[str]:
    """Returnerar None om index.html ska serveras, annars vart vi ska omdirigera."""
    normalized = '/' + (path or '').strip('/')
    if normalized == '/':
        return '/dashboard' if authenticated else '/login'
    if normalized in PUBLIC_ROUTES:
        return None
    if not is_client_route(normalized):
        return '/login'
    if not authenticated:
        return '/login'
    return None
