"""Exception hierarchy shared by the backup and restore paths."""

from typing import List, Optional


class BackupError(Exception):
    """Base class for every error raised by coolify_backup."""


class ConfigurationError(BackupError):
    """Missing or invalid configuration. Fatal for the whole run."""


# =============================================================================
# DISCOVERY
# =============================================================================

class InstanceNotFound(BackupError):
    """Instance id not present in the services or applications directory."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance not found in services or applications: {instance_id}")
        self.instance_id = instance_id


class ManifestNotFound(BackupError):
    """Instance directory has no docker-compose file."""

    def __init__(self, instance_id: str):
        super().__init__(f"No docker-compose file found for {instance_id}")
        self.instance_id = instance_id


# =============================================================================
# STRATEGY NOT APPLICABLE
# =============================================================================

class NotApplicable(BackupError):
    """A strategy does not apply to an instance.

    Silent during auto-discovery, a hard failure when the strategy was
    configured explicitly.
    """


class NoContainerCandidates(NotApplicable):
    """None of the candidate roles resolved to a container name."""

    def __init__(self, roles: List[str]):
        super().__init__(f"Could not resolve a container for roles: {', '.join(roles)}")
        self.roles = roles


class NoRunningContainer(NotApplicable):
    """Containers were resolved but none of them is running."""

    def __init__(self, tried: List[str]):
        super().__init__(f"No running container found (tried: {', '.join(tried)})")
        self.tried = tried


class ContainerNotRunning(NotApplicable):
    def __init__(self, container: str, status: str):
        super().__init__(f"Container '{container}' is {status}")
        self.container = container
        self.status = status


class ImageMismatch(NotApplicable):
    def __init__(self, container: str, image: str, expected: str):
        super().__init__(f"Container {container} is not a {expected} container (image: {image})")
        self.container = container
        self.image = image


class MissingCredentials(NotApplicable):
    pass


class NoMatchingVolume(NotApplicable):
    pass


# =============================================================================
# EXECUTION
# =============================================================================

class EngineError(BackupError):
    """The container engine could not be reached or refused a request."""


class ExecutionError(BackupError):
    """A dump, copy or archive step failed for one item."""

    def __init__(self, message: str, command: Optional[List[str]] = None):
        super().__init__(message)
        self.command = command


class IntegrityError(BackupError):
    """A snapshot failed validation. Nothing destructive may follow."""


class RestoreCancelled(BackupError):
    """The operator declined the restore confirmation."""


class SyncError(BackupError):
    """rsync / rclone returned a non-zero exit code."""


class SnapshotNotFound(BackupError):
    """No snapshot directory exists for an instance."""

    def __init__(self, instance_id: str):
        super().__init__(f"No backups found for: {instance_id}")
        self.instance_id = instance_id
