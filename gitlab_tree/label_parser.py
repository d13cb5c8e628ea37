"""
Scoped label parsing and filter option sets.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import Assignee, Epic, Issue

logger = logging.getLogger(__name__)

SCOPED_SEPARATOR = '::'

# Scoped keys shown as dedicated filter columns unless configured otherwise
DEFAULT_SCOPED_KEYS = ['Partner', 'Priority', 'State', 'Type']


def parse_scoped_label(label: str) -> Optional[Tuple[str, str]]:
    """
    Split a scoped label "key::value" into (key, value).

    Returns:
        (key, value) tuple, or None for a plain label
    """
    idx = label.find(SCOPED_SEPARATOR)
    if idx == -1:
        return None
    return label[:idx], label[idx + len(SCOPED_SEPARATOR):]


def all_assignees(issues: Iterable[Issue]) -> List[Assignee]:
    """Distinct assignees (first seen per username), sorted by display name."""
    by_username: Dict[str, Assignee] = {}
    for issue in issues:
        for assignee in issue.assignees:
            by_username.setdefault(assignee.username, assignee)
    return sorted(by_username.values(), key=lambda a: a.name.casefold())


class LabelParser:
    """Derive label filter options from the full, unfiltered data."""

    def __init__(self, enabled_scoped_keys: Optional[List[str]] = None):
        """
        Initialize label parser.

        Args:
            enabled_scoped_keys: Scoped keys exposed as dedicated filter columns
        """
        if enabled_scoped_keys is None:
            enabled_scoped_keys = DEFAULT_SCOPED_KEYS
        self.enabled_scoped_keys = list(enabled_scoped_keys)

    @staticmethod
    def _labels(epics: Iterable[Epic], issues: Iterable[Issue]) -> Iterable[str]:
        for issue in issues:
            yield from issue.labels
        for epic in epics:
            yield from epic.labels

    def scoped_label_keys(self, epics: Iterable[Epic], issues: Iterable[Issue]) -> List[str]:
        """All scoped label keys present on issues and epics, sorted."""
        keys: Set[str] = set()
        for label in self._labels(epics, issues):
            parsed = parse_scoped_label(label)
            if parsed:
                keys.add(parsed[0])
        return sorted(keys)

    def scoped_label_values(self, epics: Iterable[Epic], issues: Iterable[Issue]) -> Dict[str, List[str]]:
        """Sorted values seen for each scoped label key."""
        values: Dict[str, Set[str]] = {}
        for label in self._labels(epics, issues):
            parsed = parse_scoped_label(label)
            if parsed:
                values.setdefault(parsed[0], set()).add(parsed[1])
        return {key: sorted(vals) for key, vals in values.items()}

    def active_scoped_keys(self, epics: Iterable[Epic], issues: Iterable[Issue]) -> List[str]:
        """Enabled keys that actually occur in the data, in enabled order."""
        present = set(self.scoped_label_keys(epics, issues))
        return [key for key in self.enabled_scoped_keys if key in present]

    def all_labels(self, epics: Iterable[Epic], issues: Iterable[Issue]) -> List[str]:
        """
        Plain label options, sorted.

        Scoped labels under an active key are left out since they have their
        own filter column; every other label, scoped or not, is included.
        """
        epics = list(epics)
        issues = list(issues)
        active = set(self.active_scoped_keys(epics, issues))

        labels: Set[str] = set()
        for label in self._labels(epics, issues):
            parsed = parse_scoped_label(label)
            if parsed and parsed[0] in active:
                continue
            labels.add(label)
        return sorted(labels)

    def parse_labels(self, labels: List[str], scoped_keys: Optional[List[str]] = None) -> Dict[str, Optional[str]]:
        """
        Split an item's labels into scoped columns and remaining plain labels.

        Args:
            labels: Label strings of one issue or epic
            scoped_keys: Keys that get a column (defaults to the enabled keys)

        Returns:
            Dictionary with a 'label_<key>' entry per scoped key and a
            comma-separated 'labels' entry for everything else
        """
        if scoped_keys is None:
            scoped_keys = self.enabled_scoped_keys

        result: Dict[str, Optional[str]] = {f"label_{key}": None for key in scoped_keys}
        plain = []

        for label in labels:
            parsed = parse_scoped_label(label)
            if parsed and parsed[0] in scoped_keys:
                column = f"label_{parsed[0]}"
                # GitLab allows one value per scope; keep the first if not
                if result[column] is None:
                    result[column] = parsed[1]
                else:
                    logger.debug(f"Extra value for scoped label {parsed[0]}: {parsed[1]}")
                continue
            plain.append(label)

        result['labels'] = ', '.join(plain)
        return result
