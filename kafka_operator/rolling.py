"""
Rolling update decisions for StatefulSet pods.

Pods are annotated with the generation of every CA they trust. After a CA is
renewed the StatefulSet template carries the new generation straight away, but
restarting a pod is disruptive, so a CA-driven restart only happens inside one
of the configured maintenance time windows. A renewal that replaced an already
expired CA cannot wait for a window. Restarts caused by a changed pod spec are
not gated by windows.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from croniter import croniter

from . import naming
from .certs import CaRole, CertificateAuthority
from .model import MaintenanceWindow

logger = logging.getLogger(__name__)

_UTC_NAMES = {'GMT', 'UTC', 'Z', 'Etc/GMT', 'Etc/UTC'}


class RollAction(str, Enum):
    NONE = 'none'
    ROLL = 'roll'
    DEFER = 'defer'


@dataclass(frozen=True)
class RollDecision:
    action: RollAction
    reason: str = ''


@dataclass(frozen=True)
class CaGenerationState:
    """What the decision procedure needs to know about one CA in this pass."""

    role: CaRole
    desired_generation: int
    renewed: bool = False
    urgent: bool = False

    @classmethod
    def of(cls, ca: CertificateAuthority) -> 'CaGenerationState':
        renewed = ca.cert_renewed()
        return cls(ca.role, ca.generation, renewed, renewed and ca.expired_at_renewal)


@dataclass(frozen=True)
class PodState:
    name: str
    annotations: Mapping[str, str]
    revision: Optional[str] = None

    @classmethod
    def from_manifest(cls, pod: Mapping) -> 'PodState':
        metadata = pod.get('metadata') or {}
        return cls(
            name=metadata['name'],
            annotations=metadata.get('annotations') or {},
            revision=(metadata.get('annotations') or {}).get(naming.ANNO_REVISION),
        )

    def generation(self, role: CaRole) -> int:
        raw = self.annotations.get(role.pod_annotation)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0


def _zone(name: str) -> tzinfo:
    if name in _UTC_NAMES:
        return timezone.utc
    return ZoneInfo(name)


def _quartz_day_of_week(field: str) -> str:
    # Quartz numbers days 1-7 starting on Sunday, cron uses 0-6
    def shift(part: str) -> str:
        base, sep, step = part.partition('/')
        base = re.sub(r'(?<!#)\d+', lambda m: str(int(m.group()) - 1), base)
        return base + sep + step
    return ','.join(shift(p) for p in field.split(','))


def _year_matches(field: str, year: int) -> bool:
    if field in ('*', '?'):
        return True
    for part in field.split(','):
        base, _, step = part.partition('/')
        if base == '*':
            low, high = 1970, 2199
        elif '-' in base:
            low, high = (int(x) for x in base.split('-', 1))
        else:
            low = high = int(base)
            if step:
                high = 2199
        if low <= year <= high and (year - low) % int(step or 1) == 0:
            return True
    return False


def to_croniter_expression(quartz: str) -> str:
    """Translate ``sec min hour dom month dow [year]`` into croniter's field order."""
    parts = quartz.split()
    if len(parts) not in (6, 7):
        raise ValueError(f"Cron expression '{quartz}' must have 6 or 7 fields")
    seconds, minutes, hours, dom, month, dow = (p.replace('?', '*') for p in parts[:6])
    return f'{minutes} {hours} {dom} {month} {_quartz_day_of_week(dow)} {seconds}'


def window_matches(window: MaintenanceWindow, now: datetime) -> bool:
    """True if ``now`` falls inside the window, evaluated in the window's time zone."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(window.time_zone)).replace(microsecond=0)
    parts = window.cron.split()
    if len(parts) == 7 and not _year_matches(parts[6], local.year):
        return False
    return croniter.match(to_croniter_expression(window.cron), local)


def is_maintenance_time_window_satisfied(windows: Sequence[MaintenanceWindow], now: datetime) -> bool:
    """No windows means unrestricted, otherwise any single matching window is enough."""
    if not windows:
        return True
    for window in windows:
        try:
            if window_matches(window, now):
                return True
        except (ValueError, KeyError) as e:
            logger.warning(f"Ignoring invalid maintenance time window '{window.cron}': {e}")
    return False


def decide(pod: PodState, cas: Iterable[CaGenerationState], windows: Sequence[MaintenanceWindow],
           now: datetime, target_revision: Optional[str] = None) -> RollDecision:
    if target_revision and pod.revision and pod.revision != target_revision:
        return RollDecision(RollAction.ROLL, f'pod revision {pod.revision} differs from {target_revision}')

    stale = [ca for ca in cas if pod.generation(ca.role) != ca.desired_generation]
    if not stale:
        return RollDecision(RollAction.NONE)

    roles = ', '.join(ca.role.value for ca in stale)
    if any(ca.urgent for ca in stale):
        return RollDecision(RollAction.ROLL, f'expired {roles} CA was replaced')
    if is_maintenance_time_window_satisfied(windows, now):
        return RollDecision(RollAction.ROLL, f'{roles} CA certificate generation changed')
    return RollDecision(RollAction.DEFER, f'{roles} CA certificate generation changed '
                                          f'outside of maintenance time windows')


def plan(pods: Iterable[PodState], cas: Sequence[CaGenerationState], windows: Sequence[MaintenanceWindow],
         now: datetime, target_revision: Optional[str] = None) -> Dict[str, RollDecision]:
    """Decision for every pod, keyed by pod name."""
    return {pod.name: decide(pod, cas, windows, now, target_revision) for pod in pods}


def pods_to_roll(decisions: Mapping[str, RollDecision]) -> List[str]:
    return sorted(name for name, d in decisions.items() if d.action is RollAction.ROLL)
