class FassBackupError(Exception):
    pass


class BackupError(FassBackupError):
    pass


class IndexLockError(BackupError):
    pass


class DaemonError(FassBackupError):
    pass
