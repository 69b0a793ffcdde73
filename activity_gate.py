"""
Activity Gate

Decides which activity of a visit may be worked on next, and validates
requested transitions. Activities unlock strictly in sequence: the current
activity is the first one that is neither completed nor skipped, and it is
the only one that can be completed or skipped. Mandatory activities can never
be skipped.

The current position is kept as a cursor that only moves forward on a
transition, so asking for the current activity does not rescan the list.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from config_frm import DEFAULT_VISIT_ACTIVITIES
from field_errors import ActivityTransitionError

logger = logging.getLogger(__name__)

ACTION_COMPLETE = 'complete'
ACTION_SKIP = 'skip'
ACTION_AMEND = 'amend'


@dataclass(frozen=True)
class ActivitySpec:
    key: str
    activity_type: str
    activity_name: str
    sequence: int
    mandatory: bool = False

    def to_dict(self):
        return {
            'key': self.key,
            'activity_type': self.activity_type,
            'activity_name': self.activity_name,
            'sequence': self.sequence,
            'mandatory': self.mandatory,
        }


def default_activity_plan():
    """Activity plan from configuration, in configured order"""
    return [
        ActivitySpec(key=key, activity_type=activity_type, activity_name=name,
                     sequence=position, mandatory=mandatory)
        for position, (key, activity_type, name, mandatory) in enumerate(DEFAULT_VISIT_ACTIVITIES, start=1)
    ]


def build_activity_plan(visit=None):
    """
    Build the ordered activity plan for a visit.

    The backend only stores activity rows once they have been reported, so the
    configured plan is the backbone; activities the server knows about that
    the plan does not are appended after it in their server order. A server
    row can make an activity mandatory but never optional.
    """
    plan = default_activity_plan()
    if visit is None or not visit.activities:
        return plan

    by_key = {spec.key: spec for spec in plan}
    extra = []
    for activity in visit.activities:
        known = by_key.get(activity.key)
        if known is not None:
            if activity.mandatory and not known.mandatory:
                by_key[activity.key] = ActivitySpec(
                    key=known.key, activity_type=known.activity_type,
                    activity_name=known.activity_name, sequence=known.sequence, mandatory=True
                )
            continue
        if any(spec.key == activity.key for spec in extra):
            continue
        extra.append(activity)

    ordered = [by_key[spec.key] for spec in plan]
    next_sequence = len(ordered) + 1
    for activity in sorted(extra, key=lambda a: a.sequence):
        ordered.append(ActivitySpec(
            key=activity.key,
            activity_type=activity.activity_type,
            activity_name=activity.activity_name,
            sequence=next_sequence,
            mandatory=activity.mandatory,
        ))
        next_sequence += 1
    return ordered


class ActivitySequence:
    """
    Gated, ordered activities of one visit.

    Args:
        activities: iterable of ActivitySpec
        completed: keys known to be completed
        skipped: keys known to be skipped
        read_only: visit already completed or skipped; everything is
            viewable and nothing can transition
    """

    def __init__(self, activities, completed=(), skipped=(), read_only=False):
        self._activities = sorted(activities, key=lambda a: a.sequence)
        self._positions = {a.key: position for position, a in enumerate(self._activities)}
        self.read_only = read_only

        known = set(self._positions)
        self._completed = set(completed) & known
        self._skipped = (set(skipped) & known) - self._completed

        mandatory_skipped = {key for key in self._skipped if self.spec(key).mandatory}
        if mandatory_skipped:
            logger.warning(f"Ignoring skipped status for mandatory activities: {sorted(mandatory_skipped)}")
            self._skipped -= mandatory_skipped

        self._cursor = self._advance(0)

    def _advance(self, start):
        position = start
        while position < len(self._activities) and self._is_done(self._activities[position].key):
            position += 1
        return position

    def _is_done(self, key):
        return key in self._completed or key in self._skipped

    # --- queries ---

    @property
    def activities(self) -> List[ActivitySpec]:
        return list(self._activities)

    @property
    def completed(self):
        return frozenset(self._completed)

    @property
    def skipped(self):
        return frozenset(self._skipped)

    @property
    def current(self) -> Optional[ActivitySpec]:
        """The activity that can be worked on now, None once all are done"""
        if self._cursor >= len(self._activities):
            return None
        return self._activities[self._cursor]

    @property
    def is_finished(self):
        return self.current is None

    def spec(self, key):
        position = self._positions.get(key)
        return self._activities[position] if position is not None else None

    def status_of(self, key):
        if key in self._completed:
            return 'completed'
        if key in self._skipped:
            return 'skipped'
        return 'pending'

    def unlockable(self):
        """Activities that may be transitioned now (at most one)"""
        if self.read_only or self.current is None:
            return []
        return [self.current]

    def is_unlockable(self, key):
        current = self.current
        return not self.read_only and current is not None and current.key == key

    def can_view(self, key):
        if key not in self._positions:
            return False
        if self.read_only:
            return True
        return self._is_done(key) or self.is_unlockable(key)

    def pending_mandatory(self):
        return [a for a in self._activities if a.mandatory and a.key not in self._completed]

    def has_progress(self):
        return bool(self._completed or self._skipped)

    def check_transition(self, key, action):
        """
        Validate a requested transition without applying it.

        Raises:
            ActivityTransitionError: when the gate does not allow it
        """
        spec = self.spec(key)
        if spec is None:
            raise ActivityTransitionError(f"Unknown activity: {key}")
        if self.read_only:
            raise ActivityTransitionError(f"Visit is closed, {spec.activity_name} can only be viewed")

        if action == ACTION_AMEND:
            if key not in self._completed:
                raise ActivityTransitionError(f"{spec.activity_name} has not been completed, nothing to amend")
            return spec

        if self._is_done(key):
            raise ActivityTransitionError(f"{spec.activity_name} is already {self.status_of(key)}")
        if not self.is_unlockable(key):
            current = self.current
            raise ActivityTransitionError(
                f"{spec.activity_name} is locked",
                reasons=[f"{spec.activity_name} is locked until {current.activity_name} is completed or skipped"]
            )

        if action == ACTION_SKIP:
            if spec.mandatory:
                raise ActivityTransitionError(f"{spec.activity_name} is mandatory and cannot be skipped")
        elif action != ACTION_COMPLETE:
            raise ActivityTransitionError(f"Unsupported activity action: {action}")
        return spec

    # --- transitions ---

    def complete(self, key):
        spec = self.check_transition(key, ACTION_COMPLETE)
        self._completed.add(key)
        self._cursor = self._advance(self._cursor)
        return spec

    def skip(self, key):
        spec = self.check_transition(key, ACTION_SKIP)
        self._skipped.add(key)
        self._cursor = self._advance(self._cursor)
        return spec

    def amend(self, key):
        return self.check_transition(key, ACTION_AMEND)

    def to_list(self):
        return [
            dict(a.to_dict(),
                 status=self.status_of(a.key),
                 unlockable=self.is_unlockable(a.key),
                 viewable=self.can_view(a.key))
            for a in self._activities
        ]
