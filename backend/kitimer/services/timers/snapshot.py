import re
from dataclasses import dataclass, asdict
from typing import Optional

from .errors import CorruptRecord, InvalidProjectCode


STOPPED = 'stopped'
RUNNING = 'running'
PAUSED = 'paused'
STATUSES = (STOPPED, RUNNING, PAUSED)

PROJECT_CODE_RE = re.compile(r'^\d{4}$')


def validate_project_code(project_code) -> str:
    # str.isdigit() accepts non-ASCII digits, the regex alone is not enough
    if not isinstance(project_code, str) or not project_code.isascii() or not PROJECT_CODE_RE.match(project_code):
        raise InvalidProjectCode('Project code must be exactly 4 digits')
    return project_code


@dataclass(frozen=True)
class TimerSnapshot:
    """One immutable observation of a timer record."""

    project_code: str
    status: str
    duration_seconds: Optional[float]
    start_time: Optional[float] = None
    remaining_at_pause: Optional[float] = None
    configured_seconds: Optional[int] = None
    version: int = 0

    def __post_init__(self):
        if self.status not in STATUSES:
            raise CorruptRecord(f'Unknown timer status {self.status!r} for {self.project_code}')
        if self.duration_seconds is None:
            return
        if self.status == RUNNING and self.start_time is None:
            raise CorruptRecord(f'Timer {self.project_code} is running without a start time')
        if self.status == PAUSED and self.remaining_at_pause is None:
            raise CorruptRecord(f'Timer {self.project_code} is paused without a remaining time')

    @property
    def is_running(self) -> bool:
        return self.status == RUNNING

    @classmethod
    def from_record(cls, record) -> 'TimerSnapshot':
        return cls(
            project_code=record.project_code,
            status=record.status,
            duration_seconds=record.duration_seconds,
            start_time=record.start_time,
            remaining_at_pause=record.remaining_at_pause,
            configured_seconds=record.configured_seconds,
            version=record.version or 0,
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'TimerSnapshot':
        """Build a snapshot from the camelCase wire shape."""
        return cls(
            project_code=data['projectCode'],
            status=data['status'],
            duration_seconds=data.get('durationSeconds'),
            start_time=data.get('startTime'),
            remaining_at_pause=data.get('remainingAtPause'),
            configured_seconds=data.get('configuredSeconds'),
            version=int(data.get('version') or 0),
        )

    def to_dict(self) -> dict:
        raw = asdict(self)
        return {
            'projectCode': raw['project_code'],
            'status': raw['status'],
            'durationSeconds': raw['duration_seconds'],
            'startTime': raw['start_time'],
            'remainingAtPause': raw['remaining_at_pause'],
            'configuredSeconds': raw['configured_seconds'],
            'version': raw['version'],
        }
