import os
import logging
import tempfile
import threading

logger = logging.getLogger(__name__)


def _delete_file_after_delay(path: str, delay: int) -> threading.Timer:
    """Delete a file after a specified delay using a background timer."""
    def _remove():
        try:
            os.remove(path)
            logger.debug(f"Deleted temporary secret file: {path}")
        except OSError as e:
            logger.warning(f"Error deleting temporary secret file {path}: {e}")

    timer = threading.Timer(delay, _remove)
    timer.daemon = True
    timer.start()
    return timer


def _temp_dir() -> str | None:
    # tmpfs keeps the value off disk; PREFER_SHM=false opts out.
    prefer_shm = os.getenv("PREFER_SHM", "true").lower() == "true"
    if prefer_shm and os.path.isdir("/dev/shm") and os.access("/dev/shm", os.W_OK | os.X_OK):
        return "/dev/shm"
    return None


def write_secret_temp_file(value: str, timeout: int = 60) -> str:
    """
    Write `value` to a fresh 0600 temp file and schedule its deletion.
    Returns the absolute path.
    """
    mkstemp_dir = _temp_dir()
    try:
        fd, temp_file_path = tempfile.mkstemp(dir=mkstemp_dir, prefix="keepass-http-")
    except OSError as e:
        logger.debug(f"mkstemp in {mkstemp_dir or 'default temp dir'} failed: {e}; falling back to system default")
        fd, temp_file_path = tempfile.mkstemp(prefix="keepass-http-")

    try:
        with os.fdopen(fd, "w") as temp_file:
            temp_file.write(value)
    except OSError:
        os.remove(temp_file_path)
        raise

    _delete_file_after_delay(temp_file_path, timeout)
    logger.debug(f"Scheduled {temp_file_path} for deletion in {timeout} seconds.")
    return temp_file_path
