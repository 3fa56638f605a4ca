class VidupError(Exception):
    """Base class for errors reported to the user."""


class StorageError(VidupError):
    """The scene store failed (connection, constraint, missing tables)."""


class FileEntryNotFound(VidupError):
    def __init__(self, name):
        super().__init__(f'"{name}" not found.')
        self.name = name


class FileAlreadyAnalyzed(VidupError):
    def __init__(self, name):
        super().__init__(f'"{name}" already exists.')
        self.name = name
