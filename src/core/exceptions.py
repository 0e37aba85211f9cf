"""Error taxonomy for rotation scheduling and alert escalation.

Services raise these; routers map them onto HTTP status codes.
"""


class OncallError(Exception):
    """Base class for all domain errors raised by this service."""


class InvalidConfigError(OncallError):
    """A rotation or escalation policy definition is malformed.

    Raised at write time (zero participants on an active rotation,
    non-positive shift duration, unknown timezone, step without recipients,
    duplicate step numbers, ...). Invalid definitions are never stored.
    """


class InvalidRangeError(OncallError):
    """An override's end is not strictly after its start."""


class RotationNotFoundError(OncallError):
    """No rotation exists with the given ID."""

    def __init__(self, rotation_id: object):
        super().__init__(f"Rotation {rotation_id} not found")
        self.rotation_id = rotation_id


class PolicyNotFoundError(OncallError):
    """No escalation policy exists with the given ID."""

    def __init__(self, policy_id: object):
        super().__init__(f"Escalation policy {policy_id} not found")
        self.policy_id = policy_id


class OverrideNotFoundError(OncallError):
    """No override exists with the given ID."""

    def __init__(self, override_id: object):
        super().__init__(f"Override {override_id} not found")
        self.override_id = override_id


class RunNotFoundError(OncallError):
    """No escalation run exists for the given alert."""

    def __init__(self, alert_id: str):
        super().__init__(f"No escalation run for alert {alert_id}")
        self.alert_id = alert_id


class ConflictError(OncallError):
    """An alert already has an active run under a different policy or severity."""


class DispatchError(OncallError):
    """A NotificationDispatcher could not hand a notification off.

    Never propagates out of the escalation engine: dispatch is
    fire-and-forget with respect to run state.
    """


class NoRecipientsWarning(UserWarning):
    """An escalation step resolved to zero recipients.

    Non-fatal: the run still advances past the step.
    """
