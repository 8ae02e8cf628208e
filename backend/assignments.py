import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from supabase_service import ASSIGNMENT_TABLES, SupabaseError

logger = logging.getLogger(__name__)

LEVEL_NOUNS = {
    'fastighet': 'fastigheten',
    'byggnad': 'byggnaden',
    'objekt': 'objektet',
}


@dataclass(frozen=True)
class FetchTicket:
    subject_id: str
    seq: int


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def missing_choice_message(level: str) -> str:
    return f'Välj {level} och minst en skötare.'


def staff_label(staff: Optional[Dict], fallback: str = '') -> str:
    if not staff:
        return fallback
    name = f"{staff.get('fornamn') or ''} {staff.get('efternamn') or ''}".strip()
    if staff.get('email'):
        return f"{name} ({staff['email']})" if name else staff['email']
    return name or fallback


class AssignmentSet:
    """Tilldelade skötare för ett subjekt (fastighet, byggnad eller objekt).

    Varje hämtning märks med subjektets id och ett löpnummer. Svar som inte
    hör till senaste hämtningen för nuvarande subjekt kastas.
    """

    def __init__(self, gateway, level: str):
        if level not in ASSIGNMENT_TABLES:
            raise ValueError(f'Okänd nivå: {level}')
        self.gateway = gateway
        self.level = level
        self.subject_column = ASSIGNMENT_TABLES[level][1]
        self.subject_id = ''
        self.rows: List[Dict] = []
        self.pending: List[str] = []
        self.error: Optional[str] = None
        self.message: Optional[str] = None
        self.partial_failure = False
        # Sparat men listan kunde inte läsas om
        self.refresh_error: Optional[str] = None
        # 400 för valideringsfel och avvisade anrop, 500 annars
        self.error_status: Optional[int] = None
        self._seq = 0

    def _reset_feedback(self):
        self.error = None
        self.message = None
        self.partial_failure = False
        self.refresh_error = None
        self.error_status = None

    def select_subject(self, subject_id: Optional[str]) -> bool:
        self.subject_id = (subject_id or '').strip()
        self.rows = []
        self.pending = []
        self._reset_feedback()
        return self.refresh()

    def begin_fetch(self) -> FetchTicket:
        self._seq += 1
        return FetchTicket(self.subject_id, self._seq)

    def apply_fetch(self, ticket: FetchTicket, rows: Optional[Iterable[Dict]] = None,
                    error: Optional[str] = None) -> bool:
        if ticket.subject_id != self.subject_id or ticket.seq != self._seq:
            logger.info(
                "Discarding stale assignment result for %s=%s (current %s)",
                self.level, ticket.subject_id, self.subject_id,
            )
            return False
        if error is not None:
            self.error = error
            self.rows = []
        else:
            self.rows = list(rows or [])
        return True

    def refresh(self) -> bool:
        ticket = self.begin_fetch()
        if not ticket.subject_id:
            return self.apply_fetch(ticket, rows=[])
        try:
            rows = self.gateway.list_assignments(self.level, ticket.subject_id)
        except SupabaseError as exc:
            self.error_status = 400 if exc.is_client_error else 500
            return self.apply_fetch(ticket, error=exc.message)
        return self.apply_fetch(ticket, rows=rows)

    def add(self, staff_ids: Iterable[str], overwrite: bool = False) -> bool:
        self._reset_feedback()
        self.pending = [str(s).strip() for s in staff_ids or [] if s and str(s).strip()]
        if not self.subject_id or not self.pending:
            self.error = missing_choice_message(self.level)
            self.error_status = 400
            return False

        subject_id = self.subject_id
        assigned_at = _iso_now()
        rows = [
            {self.subject_column: subject_id, 'skotare_id': staff_id, 'tilldelad_datum': assigned_at}
            for staff_id in dict.fromkeys(self.pending)
        ]
        cleared = False
        try:
            if overwrite:
                self.gateway.delete_assignments(self.level, subject_id)
                cleared = True
            self.gateway.upsert_assignments(self.level, rows)
        except SupabaseError as exc:
            self.error = exc.message or 'Något gick fel vid kopplingen.'
            self.error_status = 400 if exc.is_client_error else 500
            if cleared:
                # Ersättningen är inte atomär
                self.partial_failure = True
                self.error = f'{self.error} Befintliga tilldelningar togs bort men de nya kunde inte sparas.'
                logger.warning(f"Replace of assignments for {self.level} {subject_id} failed after delete: {exc}")
            return False

        self.pending = []
        noun = LEVEL_NOUNS[self.level]
        self.message = f'Skötare ersatta för {noun}.' if overwrite else f'Skötare kopplade till {noun}.'
        logger.info(f"{'Replaced' if overwrite else 'Added'} {len(rows)} assignment(s) on {self.level} {subject_id}")
        self.refresh()
        if self.error:
            logger.warning(f"Assignments saved on {self.level} {subject_id} but reload failed: {self.error}")
            self.refresh_error = self.error
            self.error = None
            self.error_status = None
        return True

    def remove(self, staff_id: str) -> bool:
        self._reset_feedback()
        if not self.subject_id or not staff_id:
            self.error = f'Välj {self.level} och skötare.'
            self.error_status = 400
            return False
        try:
            self.gateway.delete_assignment(self.level, self.subject_id, staff_id)
        except SupabaseError as exc:
            self.error = exc.message or 'Kunde inte ta bort skötare.'
            self.error_status = 400 if exc.is_client_error else 500
            return False
        self.rows = [row for row in self.rows if row.get('skotare_id') != staff_id]
        self.message = f'Skötare borttagen från {LEVEL_NOUNS[self.level]}.'
        return True

    def snapshot(self, staff: Optional[List[Dict]] = None) -> Dict:
        by_id = {s.get('id'): s for s in staff or []}
        return {
            'subject_level': self.level,
            'subject_id': self.subject_id,
            'assignments': [
                {
                    'skotare_id': row.get('skotare_id'),
                    'tilldelad_datum': row.get('tilldelad_datum'),
                    'namn': staff_label(by_id.get(row.get('skotare_id')), row.get('skotare_id') or ''),
                }
                for row in self.rows
            ],
            'pending': list(self.pending),
            'error': self.error,
            'message': self.message,
            'partial_failure': self.partial_failure,
            'refresh_error': self.refresh_error,
        }
