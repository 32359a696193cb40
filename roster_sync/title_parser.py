"""
Profile title parsing.

Directory titles are free text such as
"Associate Director - Consulting (CASIE, FEBA, Solidar)". This module turns
them into a position/department pair and flags alumni.
"""

import re
import logging
from typing import Optional

from roster_sync.models import RoleFacts

logger = logging.getLogger(__name__)

SEPARATOR = ' - '
HEAD_OF_PREFIX = 'Head of '

# Position -> department it always belongs to
DEPARTMENT_OVERRIDES = {
    'President': 'Presidency',
    'Vice-President': 'Presidency',
    'Consultant': 'Consultants',
    'Senior Consultant': 'Consultants',
    'Project Leader': 'Consultants',
}

_TRAILING_PARENTHETICAL = re.compile(r'\s*\([^)]*\)\s*$')


def strip_parenthetical(title: str) -> str:
    """Remove a trailing "(...)" clause such as a list of projects."""
    return _TRAILING_PARENTHETICAL.sub('', title).strip()


def parse_title(raw: Optional[str]) -> RoleFacts:
    """
    Parse a profile title into role facts.

    Args:
        raw: Title as entered in the directory profile

    Returns:
        RoleFacts with position, department and the alumni flag
    """
    if not raw or not isinstance(raw, str):
        return RoleFacts()

    if 'alumni' in raw.lower():
        logger.debug(f"Alumni title detected: '{raw}'")
        return RoleFacts(is_alumni=True)

    clean_title = strip_parenthetical(raw)
    parts = [part.strip() for part in clean_title.split(SEPARATOR)]

    if not any(parts):
        return RoleFacts()

    position = parts[0]
    department = parts[1] if len(parts) >= 2 else ''

    if len(parts) == 1 and position.startswith(HEAD_OF_PREFIX):
        # "Head of Marketing" carries its department without a separator
        department = position[len(HEAD_OF_PREFIX):].strip()
        position = HEAD_OF_PREFIX.strip()

    if position in DEPARTMENT_OVERRIDES:
        department = DEPARTMENT_OVERRIDES[position]

    logger.debug(f"Parsed title '{raw}' -> position='{position}', department='{department}'")
    return RoleFacts(position=position, department=department)
