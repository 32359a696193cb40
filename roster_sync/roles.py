"""
Role vocabulary validation.

Positions and departments published to the sink must come from a closed,
organisation-defined vocabulary. The vocabularies are configuration; the
defaults below mirror the CMS schema.
"""

import logging
from typing import Iterable, List, Optional

from roster_sync.models import RoleValidation

logger = logging.getLogger(__name__)

DEFAULT_POSITIONS = [
    'President',
    'Vice-President',
    'Head of',
    'Associate Director',
    'Project Leader',
    'Senior Consultant',
    'Consultant',
]

DEFAULT_DEPARTMENTS = [
    'Presidency',
    'Business Development',
    'P&O',
    'Marketing',
    'Finance',
    'Events',
    'Consulting',
    'Consultants',
]


class RoleValidator:
    """Checks parsed role facts against the allowed positions and departments."""

    def __init__(self, positions: Optional[Iterable[str]] = None,
                 departments: Optional[Iterable[str]] = None):
        self.positions: List[str] = list(positions if positions is not None else DEFAULT_POSITIONS)
        self.departments: List[str] = list(departments if departments is not None else DEFAULT_DEPARTMENTS)
        self._position_set = frozenset(self.positions)
        self._department_set = frozenset(self.departments)

    @classmethod
    def from_config(cls, roles_config: dict) -> 'RoleValidator':
        return cls(roles_config.get('positions'), roles_config.get('departments'))

    def validate(self, position: str, department: str) -> RoleValidation:
        result = RoleValidation(
            is_valid_position=position in self._position_set,
            is_valid_department=department in self._department_set,
        )
        if not result.is_valid:
            logger.debug(f"Role rejected: position='{position}' ({result.is_valid_position}), "
                         f"department='{department}' ({result.is_valid_department})")
        return result
