"""Exceptions raised by the photo renamer pipeline."""


class PhotoRenamerError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(PhotoRenamerError):
    """Required configuration is missing or invalid; raised before any item is touched."""


class ImageLoadError(PhotoRenamerError):
    """A source image could not be loaded into the batch."""


class InvalidTransitionError(PhotoRenamerError):
    """An item was asked to move to a state its current state does not allow."""


class ExportError(PhotoRenamerError):
    """Writing an exported image, sidecar or archive failed."""


class BatchBusyError(PhotoRenamerError):
    """An orchestrator run was started while another one is still in flight."""
