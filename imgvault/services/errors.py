"""Exceptions raised by the backup & restore services."""


class BackupServiceError(Exception):
    """Base exception for backup service errors."""

    def __init__(self, message: str, code: str = "BACKUP_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Input errors (raised synchronously, before any side effect)
# ---------------------------------------------------------------------------


class BackupNotFoundError(BackupServiceError):
    """Raised when a backup task does not exist or has no usable archive."""

    def __init__(self, backup_id: str, reason: str = "not found"):
        super().__init__(f"Backup '{backup_id}' {reason}", "BACKUP_NOT_FOUND")


class RestoreTaskNotFoundError(BackupServiceError):
    """Raised when a restore task does not exist."""

    def __init__(self, restore_id: str):
        super().__init__(f"Restore task '{restore_id}' not found", "RESTORE_TASK_NOT_FOUND")


class UploadStagingError(BackupServiceError):
    """Raised when an uploaded archive cannot be staged."""

    def __init__(self, message: str):
        super().__init__(message, "UPLOAD_STAGING_ERROR")


class UploadTooLargeError(UploadStagingError):
    def __init__(self, max_size: int):
        super().__init__(f"Uploaded file exceeds the maximum size of {max_size} bytes")
        self.code = "UPLOAD_TOO_LARGE"


class EmptyUploadError(BackupServiceError):
    def __init__(self):
        super().__init__("Uploaded backup file is empty", "EMPTY_UPLOAD")


# ---------------------------------------------------------------------------
# Restore preconditions (checked before anything destructive runs)
# ---------------------------------------------------------------------------


class BackupNotCompletedError(BackupServiceError):
    def __init__(self, backup_id: str, status: str):
        super().__init__(
            f"Backup '{backup_id}' is not completed (status: {status})",
            "BACKUP_TASK_NOT_COMPLETED",
        )


class BackupFileMissingError(BackupServiceError):
    def __init__(self, path: str):
        super().__init__(f"Backup file does not exist: {path}", "BACKUP_FILE_MISSING")


class NoValidDatabaseBackupError(BackupServiceError):
    def __init__(self, message: str = "No valid database backup file found in archive"):
        super().__init__(message, "NO_VALID_DB_BACKUP")


class DialectMismatchError(BackupServiceError):
    def __init__(self, archive_dialect: str, current_dialect: str):
        super().__init__(
            f"Database type mismatch: backup is {archive_dialect} but current is {current_dialect}",
            "DB_TYPE_MISMATCH",
        )
        self.archive_dialect = archive_dialect
        self.current_dialect = current_dialect


class UnsupportedDatabaseError(BackupServiceError):
    def __init__(self, database_type: str):
        super().__init__(
            f"Unsupported database type: {database_type}, only sqlite and mysql are supported",
            "UNSUPPORTED_DATABASE",
        )


# ---------------------------------------------------------------------------
# Archive errors
# ---------------------------------------------------------------------------


class InvalidArchiveError(BackupServiceError):
    def __init__(self, message: str):
        super().__init__(message, "INVALID_ARCHIVE")


class ArchiveSecurityError(BackupServiceError):
    """Raised when an archive entry would be written outside the extraction directory."""

    def __init__(self, entry_name: str, reason: str):
        super().__init__(
            f"Zip slip attack detected: entry '{entry_name}' {reason}",
            "ARCHIVE_SECURITY_ERROR",
        )
        self.entry_name = entry_name


# ---------------------------------------------------------------------------
# Tooling / transactional errors
# ---------------------------------------------------------------------------


class DatabaseToolError(BackupServiceError):
    """Raised when mysqldump/mysql cannot be run or exits non-zero."""

    def __init__(self, tool: str, detail: str):
        super().__init__(f"{tool} failed: {detail}", "DATABASE_TOOL_ERROR")
        self.tool = tool
        self.detail = detail


class DatabaseExportError(BackupServiceError):
    def __init__(self, message: str):
        super().__init__(message, "BACKUP_DATABASE_ERROR")


class DatabaseImportError(BackupServiceError):
    """Raised when a restore statement fails; the import was rolled back."""

    def __init__(self, message: str):
        super().__init__(message, "DATABASE_IMPORT_ERROR")


class FileSyncError(BackupServiceError):
    def __init__(self, message: str):
        super().__init__(message, "FILE_SYNC_ERROR")
