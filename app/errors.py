"""Error taxonomy shared by the disk manager, the VM manager and the API.

Each error carries the HTTP status it maps to, so the API layer converts any
of them to a ``{"error": <message>}`` body with a single handler.
"""


class ControlPlaneError(RuntimeError):
    """Base class for every error raised by the control plane."""

    status_code = 500


class ValidationError(ControlPlaneError):
    """Missing or invalid request fields, or an unsupported format/type pair."""

    status_code = 400


class InvalidState(ControlPlaneError):
    """Operation not allowed in the entity's current state."""

    status_code = 400


class NotFound(ControlPlaneError):
    """Referenced disk, media file or VM record is absent."""

    status_code = 404


class Conflict(ControlPlaneError):
    """Target name collides with an existing entity."""

    status_code = 409


class ToolError(ControlPlaneError):
    """qemu-img or the emulator could not be run or exited with an error."""

    status_code = 500


class SupervisorError(ControlPlaneError):
    """Unexpected process-table failure (anything but "no such process")."""

    status_code = 500
