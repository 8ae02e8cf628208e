"""
Kaskadval fastighet → byggnad → objekt för tilldelningsformulären.

Varje nivå är antingen tom, vald eller låst. En nivå blir låst när dess id
kommer från navigeringen (t.ex. ?byggnad=<id>) i stället för ett användarval.
Barnnivåer härleds alltid från föräldern med `derive_selection`, som körs
synkront när alla listor är laddade. Ett förval som inte hör till den
upplösta föräldern avvisas och nivån faller tillbaka till första alternativet.
"""
import logging
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LEVELS = ('fastighet', 'byggnad', 'objekt')

# Kolumn på barnraden som pekar på föräldern
PARENT_KEYS = {
    'byggnad': 'fastighet_id',
    'objekt': 'byggnad_id',
}

PLACEHOLDER_LABELS = {
    'fastighet': ('Laddar vald fastighet…', 'Vald fastighet'),
    'byggnad': ('Laddar vald byggnad…', 'Vald byggnad'),
    'objekt': ('Laddar valt objekt…', 'Valt objekt'),
}

EMPTY_LABELS = {
    'fastighet': 'Inga fastigheter',
    'byggnad': 'Inga byggnader under denna fastighet',
    'objekt': 'Inga objekt under denna byggnad',
}


class SelectionError(ValueError):
    pass


def levels_for(depth: str) -> Tuple[str, ...]:
    if depth not in LEVELS:
        raise SelectionError(f'Okänd nivå: {depth}')
    return LEVELS[:LEVELS.index(depth) + 1]


def option_label(level: str, row: Dict) -> str:
    if level == 'fastighet':
        return row.get('namn') or row.get('adress') or 'Namnlös fastighet'
    return row.get('namn') or str(row.get('id') or '')


def filter_options(level: str, options: Dict[str, List[Dict]], parent_id: Optional[str]) -> List[Dict]:
    rows = options.get(level) or []
    if level == LEVELS[0]:
        return list(rows)
    if not parent_id:
        return []
    key = PARENT_KEYS[level]
    return [row for row in rows if row.get(key) == parent_id]


def derive_selection(levels, options, values, locked):
    """Härled ett konsistent val nivå för nivå uppifrån.

    Ett önskat id behålls bara om det finns bland föräldrans filtrerade
    alternativ. Annars väljs första alternativet (eller '' om listan är tom)
    och ett eventuellt lås släpps. Returnerar (values, locked) som nya dicts.
    """
    resolved = {}
    still_locked = {}
    parent_id = None
    for level in levels:
        candidate_ids = [row.get('id') for row in filter_options(level, options, parent_id)]
        wanted = values.get(level) or ''
        is_locked = bool(locked.get(level))
        if wanted and wanted in candidate_ids:
            value = wanted
        else:
            value = candidate_ids[0] if candidate_ids else ''
            if wanted and is_locked:
                logger.warning(
                    "Förval %s=%s hör inte till vald förälder %r, använder %r",
                    level, wanted, parent_id, value or None,
                )
                is_locked = False
        resolved[level] = value
        still_locked[level] = is_locked
        parent_id = value
    return resolved, still_locked


class CascadingSelection:
    def __init__(self, depth: str, presets: Optional[Dict[str, str]] = None):
        self.levels = levels_for(depth)
        presets = presets or {}
        self.values = {level: str(presets.get(level) or '').strip() for level in self.levels}
        self.locked = {level: bool(self.values[level]) for level in self.levels}
        # Klientens senaste val, används om ett förval släpps vid laddning
        self.wanted: Dict[str, str] = {}
        self.options: Dict[str, List[Dict]] = {level: [] for level in self.levels}
        self.loading = True
        self.error: Optional[str] = None

    @classmethod
    def restore(cls, depth, presets=None, values=None, options=None) -> 'CascadingSelection':
        """Återskapa ett formulär från klientens förval och nuvarande val."""
        selection = cls(depth, presets)
        for level in selection.levels:
            wanted = str((values or {}).get(level) or '').strip()
            if not wanted:
                continue
            selection.wanted[level] = wanted
            if not selection.locked[level]:
                selection.values[level] = wanted
        if options is not None:
            selection.load(options)
        return selection

    @property
    def ready(self) -> bool:
        return not self.loading and self.error is None

    @property
    def subject_level(self) -> str:
        return self.levels[-1]

    @property
    def subject_id(self) -> str:
        return self.values[self.subject_level] if self.ready else ''

    def presets(self) -> Dict[str, str]:
        return {level: self.values[level] for level in self.levels if self.locked[level]}

    def load(self, options: Dict[str, List[Dict]]) -> None:
        self.options = {level: list(options.get(level) or []) for level in self.levels}
        self.loading = False
        self.error = None
        was_locked = dict(self.locked)
        self.values, self.locked = derive_selection(self.levels, self.options, self.values, self.locked)
        released = [level for level in self.levels if was_locked[level] and not self.locked[level]]
        if released and self.wanted:
            # Ett avvisat förval ger plats åt klientens eget val på de olåsta nivåerna
            values = dict(self.values)
            for level in self.levels:
                if not self.locked[level] and self.wanted.get(level):
                    values[level] = self.wanted[level]
            self.values, self.locked = derive_selection(self.levels, self.options, values, self.locked)

    def fail(self, reason: str) -> None:
        # Inga halvladdade listor: allt förblir inaktiverat
        self.options = {level: [] for level in self.levels}
        self.loading = False
        self.error = reason or 'Kunde inte hämta data.'

    def filtered(self, level: str) -> List[Dict]:
        index = self.levels.index(level)
        parent_id = self.values[self.levels[index - 1]] if index else None
        return filter_options(level, self.options, parent_id)

    def is_disabled(self, level: str) -> bool:
        if not self.ready or self.locked[level]:
            return True
        if not self.filtered(level):
            return True
        # En låst barnnivå låser även sina föräldrar
        index = self.levels.index(level)
        return any(self.locked[child] for child in self.levels[index + 1:])

    def choose(self, level: str, option_id: str) -> bool:
        """Användarval på en nivå. Returnerar True om valet ändrades."""
        if level not in self.levels:
            raise SelectionError(f'Okänd nivå: {level}')
        if not self.ready:
            raise SelectionError('Listorna är inte laddade.')
        if self.locked[level]:
            raise SelectionError('Nivån är förvald och låst.')
        if self.is_disabled(level):
            raise SelectionError('Nivån kan inte ändras.')
        option_id = str(option_id or '').strip()
        if option_id not in {row.get('id') for row in self.filtered(level)}:
            raise SelectionError('Ogiltigt val.')
        if self.values[level] == option_id:
            return False

        self.values[level] = option_id
        index = self.levels.index(level)
        for child in self.levels[index + 1:]:
            if not self.locked[child]:
                self.values[child] = ''
        self.values, self.locked = derive_selection(self.levels, self.options, self.values, self.locked)
        return True

    def render_options(self, level: str) -> List[Dict]:
        value = self.values[level]
        rows = self.filtered(level) if self.ready else []
        entries = [{'value': row.get('id'), 'label': option_label(level, row)} for row in rows]
        if value and not any(entry['value'] == value for entry in entries):
            # Anti-blink: visa valt id tills listan innehåller det
            loading_label, chosen_label = PLACEHOLDER_LABELS[level]
            entries.insert(0, {
                'value': value,
                'label': chosen_label if self.ready else loading_label,
                'placeholder': True,
            })
        if not rows:
            entries.append({'value': '', 'label': EMPTY_LABELS[level] if self.ready else 'Laddar…'})
        return entries

    def snapshot(self) -> Dict:
        return {
            'loading': self.loading,
            'error': self.error,
            'subject_level': self.subject_level,
            'subject_id': self.subject_id,
            'presets': self.presets(),
            'levels': {
                level: {
                    'value': self.values[level],
                    'locked': self.locked[level],
                    'disabled': self.is_disabled(level),
                    'options': self.render_options(level),
                }
                for level in self.levels
            },
        }
