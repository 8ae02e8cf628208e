import re
from typing import Dict, List, Optional, Tuple

from security import sanitize_string

FASTIGHET_TYPER = ('bostad', 'kommersiell', 'industri', 'mark', 'annan')
BYGGNAD_TYPER = ('bostad', 'kontor', 'lager', 'garage', 'annan')
OBJEKT_TYPER = ('lägenhet', 'förråd', 'soprum', 'källare', 'lokal', 'kontor', 'gård', 'annan')
ROLLER = ('superadmin', 'admin', 'user')

MIN_PASSWORD_LENGTH = 8

_INT_RE = re.compile(r'^[+-]?\d+$')
_DECIMAL_RE = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)$')
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def _text(value) -> str:
    if value is None:
        return ''
    return str(value).strip()


def parse_int(raw) -> Tuple[Optional[int], bool]:
    """Tolka ett valfritt heltal. Tomt fält ger (None, True)."""
    if isinstance(raw, bool):
        return None, False
    if isinstance(raw, int):
        return raw, True
    text = _text(raw)
    if not text:
        return None, True
    if not _INT_RE.match(text):
        return None, False
    return int(text), True


def parse_decimal(raw) -> Tuple[Optional[float], bool]:
    """Tolka ett valfritt decimaltal, med punkt eller komma som decimaltecken."""
    if isinstance(raw, bool):
        return None, False
    if isinstance(raw, (int, float)):
        return float(raw), True
    text = _text(raw).replace(',', '.')
    if not text:
        return None, True
    if not _DECIMAL_RE.match(text):
        return None, False
    return float(text), True


def validate_fastighet(data: Dict) -> Tuple[Dict, List[str]]:
    errors = []
    cleaned = {
        'namn': sanitize_string(data.get('namn'), 200) or None,
        'adress': sanitize_string(data.get('adress'), 200) or None,
        'kvarter': sanitize_string(data.get('kvarter'), 100) or None,
    }

    typ = data.get('typ') or []
    if isinstance(typ, str):
        typ = typ.split(',')
    typ = [_text(t) for t in typ if _text(t)]
    unknown = [t for t in typ if t not in FASTIGHET_TYPER]
    if unknown:
        errors.append(f"Ogiltig fastighetstyp: {', '.join(unknown)}")
    cleaned['typ'] = list(dict.fromkeys(typ))

    byggar, ok = parse_int(data.get('byggår', data.get('byggar')))
    if not ok:
        errors.append('Byggår måste vara ett heltal.')
    cleaned['byggår'] = byggar

    if not cleaned['namn'] and not cleaned['adress']:
        errors.append('Ange namn eller adress.')

    return cleaned, errors


def validate_byggnad(data: Dict) -> Tuple[Dict, List[str]]:
    errors = []
    fastighet_id = _text(data.get('fastighet_id'))
    if not fastighet_id:
        errors.append('Välj en fastighet.')

    namn = sanitize_string(data.get('namn'), 200)
    if not namn:
        errors.append('Namn är obligatoriskt.')

    typ = _text(data.get('typ')) or 'bostad'
    if typ not in BYGGNAD_TYPER:
        errors.append('Ogiltig byggnadstyp.')

    vaningar, ok = parse_int(data.get('våningar', data.get('vaningar')))
    if not ok:
        errors.append('Våningar måste vara ett heltal.')

    area, ok = parse_decimal(data.get('area'))
    if not ok:
        errors.append('Area måste vara ett tal (använd punkt eller komma).')

    byggar, ok = parse_int(data.get('byggår', data.get('byggar')))
    if not ok:
        errors.append('Byggår måste vara ett heltal.')

    cleaned = {
        'fastighet_id': fastighet_id,
        'namn': namn,
        'typ': typ,
        'våningar': vaningar,
        'area': area,
        'byggår': byggar,
    }
    return cleaned, errors


def validate_objekt(data: Dict) -> Tuple[Dict, List[str]]:
    errors = []
    byggnad_id = _text(data.get('byggnad_id'))
    if not byggnad_id:
        errors.append('Välj en byggnad.')

    typ = _text(data.get('typ')) or 'lägenhet'
    if typ not in OBJEKT_TYPER:
        errors.append('Ogiltig objekttyp.')

    kvm, ok = parse_decimal(data.get('kvadratmeter'))
    if not ok:
        errors.append('Kvadratmeter måste vara ett tal (använd punkt eller komma).')

    cleaned = {
        'byggnad_id': byggnad_id,
        'namn': sanitize_string(data.get('namn'), 200) or None,
        'typ': typ,
        'plan': sanitize_string(data.get('plan'), 50) or None,
        'kvadratmeter': kvm,
        'beskrivning': sanitize_string(data.get('beskrivning'), 2000) or None,
    }
    return cleaned, errors


def normalize_user_payload(data: Dict) -> Dict:
    """Mappa engelska fältnamn (firstName, role ...) till tabellens namn."""
    data = data or {}
    return {
        'email': data.get('email'),
        'password': data.get('password'),
        'fornamn': data.get('fornamn', data.get('firstName')),
        'efternamn': data.get('efternamn', data.get('lastName')),
        'roll': data.get('roll', data.get('role')),
        'adress': data.get('adress', data.get('address')),
    }


def validate_user(data: Dict, require_password: bool = True) -> Tuple[Dict, List[str]]:
    errors = []
    payload = normalize_user_payload(data)

    email = _text(payload['email']).lower()
    if not email:
        errors.append('E-post är obligatoriskt.')
    elif not _EMAIL_RE.match(email) or len(email) > 254:
        errors.append('Ogiltig e-postadress.')

    password = payload['password'] or ''
    if require_password and len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f'Lösenordet måste vara minst {MIN_PASSWORD_LENGTH} tecken.')

    fornamn = sanitize_string(payload['fornamn'], 100)
    efternamn = sanitize_string(payload['efternamn'], 100)
    if not fornamn:
        errors.append('Förnamn är obligatoriskt.')
    if not efternamn:
        errors.append('Efternamn är obligatoriskt.')

    roll = _text(payload['roll']) or 'user'
    if roll not in ROLLER:
        errors.append(f"Ogiltig roll. Måste vara en av: {', '.join(ROLLER)}")

    cleaned = {
        'email': email,
        'fornamn': fornamn,
        'efternamn': efternamn,
        'roll': roll,
        'adress': sanitize_string(payload['adress'], 200) or None,
    }
    if require_password:
        cleaned['password'] = password
    return cleaned, errors


def validate_password_reset(pw1, pw2) -> Tuple[bool, Optional[str]]:
    pw1 = pw1 or ''
    if len(pw1) < MIN_PASSWORD_LENGTH:
        return False, f'Lösenordet måste vara minst {MIN_PASSWORD_LENGTH} tecken.'
    if pw1 != (pw2 or ''):
        return False, 'Lösenorden matchar inte.'
    return True, None
