"""
Streaming transfer of a capture pipeline into the storage tiers.

The hot tier receives the capture output as a stream. When a cold vault is
configured the stream is fanned out: a background branch spools the same
bytes to a scratch file, and once the capture has exited cleanly that file
is hashed and uploaded to the vault.

Failure rules:
- a failed capture read or hot upload kills the capture and raises TransferError
- cold failure only marks the outcome (cold_succeeded=False)
- capture exit 1 with "file changed as we read it" is a warning
- any other non-zero capture exit raises TransferError
"""

import errno
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError

from .errors import ConfigurationError, StorageError, TransferError
from .fanout import FanOut
from .objects import StorageObject
from .sources import is_benign_capture_warning
from .storage import StorageClients

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = 'tierkeep-cold-'
READ_SIZE = 1024 * 1024

_active_scratch = set()
_active_lock = threading.Lock()


@dataclass
class TransferOutcome:
    """Result of one transfer or migration."""

    object_key: str
    bytes_written: int = 0
    hot_succeeded: bool = False
    cold_succeeded: bool = False
    cold_attempted: bool = False
    archive_id: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.hot_succeeded and (self.cold_succeeded or not self.cold_attempted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'object_key': self.object_key,
            'bytes_written': self.bytes_written,
            'hot_succeeded': self.hot_succeeded,
            'cold_succeeded': self.cold_succeeded,
            'cold_attempted': self.cold_attempted,
            'archive_id': self.archive_id,
            'error': self.error,
            'warnings': list(self.warnings)
        }


def cleanup_stale_scratch_files(directory: Optional[str] = None) -> int:
    """
    Remove leftover scratch files from earlier runs.

    Files currently being written by this process are left alone.

    Returns:
        Number of files removed
    """
    directory = directory or tempfile.gettempdir()
    removed = 0
    with _active_lock:
        active = set(_active_scratch)

    try:
        names = os.listdir(directory)
    except OSError as e:
        logger.warning(f"Cannot scan {directory} for stale scratch files: {e}")
        return 0

    for name in names:
        path = os.path.join(directory, name)
        if not name.startswith(SCRATCH_PREFIX) or path in active:
            continue
        try:
            os.remove(path)
            removed += 1
        except OSError as e:
            logger.warning(f"Could not remove stale scratch file {path}: {e}")

    return removed


class ScratchFile:
    """
    Uniquely named spool file for the cold tier.

    Running out of disk space (on create or write) triggers one cleanup of
    stale scratch files and one retry; a second ENOSPC propagates.
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory
        self.path = None
        self.size = 0
        self._fd = None
        self._retried = False

    def _recover_space(self, error: OSError):
        if error.errno != errno.ENOSPC or self._retried:
            raise error
        self._retried = True
        removed = cleanup_stale_scratch_files(self.directory)
        logger.warning(f"Scratch disk full, removed {removed} stale scratch file(s) and retrying")

    def open(self) -> 'ScratchFile':
        while True:
            try:
                self._fd, self.path = tempfile.mkstemp(
                    prefix=SCRATCH_PREFIX, suffix='.tmp', dir=self.directory
                )
                break
            except OSError as e:
                self._recover_space(e)

        with _active_lock:
            _active_scratch.add(self.path)
        return self

    def write(self, chunk: bytes):
        view = memoryview(chunk)
        while view:
            try:
                written = os.write(self._fd, view)
            except OSError as e:
                self._recover_space(e)
                continue
            view = view[written:]
            self.size += written

    def close(self):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def remove(self):
        self.close()
        if self.path:
            with _active_lock:
                _active_scratch.discard(self.path)
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove scratch file {self.path}: {e}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        if exc_type is not None:
            self.remove()


class _CaptureGate:
    """
    Capture exit verdict shared by the hot path and the cold branch.

    The first caller of `result()` waits for the capture to exit; later
    callers get the same (exit_status, stderr). The cold branch reaches it
    as soon as it has spooled the end of stream, independently of the hot
    upload.
    """

    def __init__(self, capture):
        self._capture = capture
        self._lock = threading.Lock()
        self._result = None
        self._cancelled = threading.Event()

    def cancel(self):
        """The transfer failed; the cold branch must not upload."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def result(self) -> Tuple[int, str]:
        with self._lock:
            if self._result is None:
                self._result = self._capture.wait()
            return self._result

    def capture_ok(self) -> bool:
        if self.cancelled:
            return False
        exit_status, stderr = self.result()
        return exit_status == 0 or is_benign_capture_warning(exit_status, stderr)


class StreamingTransfer:
    """
    Moves capture output or existing hot objects into the storage tiers.

    Args:
        clients: Storage clients for this invocation
        scratch_dir: Directory for cold tier spool files (system temp if None)
    """

    def __init__(self, clients: StorageClients, scratch_dir: Optional[str] = None):
        self.clients = clients
        self.scratch_dir = scratch_dir

    def transfer(self, transport, command: str, object_key: str, use_cold: bool = True) -> TransferOutcome:
        """
        Run a capture command and store its output under `object_key`.

        With a cold vault the hot upload and the cold spool run concurrently;
        the cold branch uploads its spool as soon as it has seen the end of
        stream and the capture exited cleanly, without waiting for the hot
        upload to complete.

        Args:
            transport: LocalTransport or SSHTransport
            command: Archive-producing shell pipeline
            object_key: Hot tier key
            use_cold: Also archive to the cold vault when one is configured

        Returns:
            TransferOutcome; cold failures are reported here, not raised

        Raises:
            TransferError: If reading the capture, the hot upload or the
                capture command failed. The capture is killed first.
        """
        outcome = TransferOutcome(object_key=object_key)
        cold = self.clients.cold if use_cold else None
        capture = transport.open_stream(command)

        if cold is None:
            try:
                outcome.bytes_written = self.clients.hot.put_stream(object_key, capture.stdout)
            except Exception as e:
                capture.kill()
                outcome.error = str(e)
                raise TransferError(f"Hot tier upload failed: {e}", outcome) from e
            outcome.hot_succeeded = True
            exit_status, stderr = capture.wait()
            self._check_capture(exit_status, stderr, outcome)
            return outcome

        outcome.cold_attempted = True
        gate = _CaptureGate(capture)
        fanout = FanOut(capture.stdout)
        cold_future = fanout.attach(lambda branch: self._spool_and_archive(branch, object_key, gate))

        try:
            outcome.bytes_written = self.clients.hot.put_stream(object_key, fanout.primary)
        except Exception as e:
            gate.cancel()
            fanout.abort()
            capture.kill()
            cold_future.add_done_callback(self._discard_archive)
            outcome.error = str(e)
            raise TransferError(f"Hot tier upload failed: {e}", outcome) from e

        outcome.hot_succeeded = True
        fanout.finish()

        exit_status, stderr = gate.result()
        try:
            self._check_capture(exit_status, stderr, outcome)
        except TransferError:
            gate.cancel()
            raise

        try:
            archived = cold_future.result()
            outcome.cold_succeeded = True
            outcome.archive_id = archived['archive_id']
            logger.info(f"Archived {object_key} to cold tier ({archived['size']} bytes)")
        except Exception as e:
            outcome.error = f"Cold tier archive failed: {e}"
            logger.warning(f"{object_key}: {outcome.error}")

        return outcome

    def _check_capture(self, exit_status: int, stderr: str, outcome: TransferOutcome):
        if exit_status == 0:
            return

        if is_benign_capture_warning(exit_status, stderr):
            message = f"capture reported non-fatal issue: {stderr.strip()}"
            logger.warning(f"{outcome.object_key}: {message}")
            outcome.warnings.append(message)
            return

        outcome.hot_succeeded = False
        outcome.error = f"Capture command exited {exit_status}: {stderr.strip()}"
        # A truncated archive must not count as a backup
        try:
            self.clients.hot.delete_object(outcome.object_key)
        except StorageError as e:
            logger.error(f"Could not remove partial object {outcome.object_key}: {e}")
        raise TransferError(outcome.error, outcome)

    def _spool_and_archive(self, branch, object_key: str, gate: _CaptureGate) -> Dict[str, Any]:
        scratch = ScratchFile(self.scratch_dir)
        with scratch:
            for chunk in branch:
                scratch.write(chunk)

        try:
            if not gate.capture_ok():
                raise StorageError("capture failed, cold archive skipped")
            return self.clients.cold.upload_archive(scratch.path, f"Backup: {object_key}")
        finally:
            scratch.remove()

    def _discard_archive(self, future):
        """Done-callback removing a cold archive whose hot transfer failed."""
        if future.cancelled() or future.exception() is not None:
            return
        archive_id = future.result()['archive_id']
        try:
            self.clients.cold.delete_archive(archive_id)
            logger.warning(f"Removed cold archive {archive_id} of a failed transfer")
        except StorageError as e:
            logger.error(f"Could not remove cold archive {archive_id} of a failed transfer: {e}")

    def migrate(self, obj: StorageObject) -> TransferOutcome:
        """
        Copy an existing hot object into the cold vault.

        Per-object failures are reported on the outcome, never raised, so a
        caller can keep going through a batch. The hot object is not touched.

        Raises:
            ConfigurationError: If no cold vault is configured
        """
        if self.clients.cold is None:
            raise ConfigurationError("Cold tier is not configured")

        outcome = TransferOutcome(object_key=obj.key, cold_attempted=True)
        if obj.size == 0:
            outcome.error = "Skipped empty object"
            return outcome

        scratch = ScratchFile(self.scratch_dir)
        try:
            body = self.clients.hot.get_stream(obj.key)
            try:
                with scratch:
                    for chunk in iter(lambda: body.read(READ_SIZE), b''):
                        scratch.write(chunk)
            finally:
                body.close()
        except (StorageError, BotoCoreError, OSError) as e:
            scratch.remove()
            outcome.error = f"Failed to read {obj.key} from hot tier: {e}"
            return outcome

        outcome.hot_succeeded = True
        outcome.bytes_written = scratch.size

        try:
            if scratch.size == 0:
                outcome.error = "Skipped empty object"
                return outcome
            archived = self.clients.cold.upload_archive(
                scratch.path, f"Migrated from hot tier: {obj.key}"
            )
            outcome.cold_succeeded = True
            outcome.archive_id = archived['archive_id']
        except StorageError as e:
            outcome.error = f"Cold tier archive failed: {e}"
        finally:
            scratch.remove()

        return outcome
