import logging
import os
from pathlib import Path
from typing import Any, Protocol

from backend.config import READER_ENABLED

logger = logging.getLogger(__name__)

# Buffer sizes used by the ZKFinger SDK
IMG_BUFFER_SIZE = 500 * 500
FP_BUFFER_SIZE = 2048

try:
    # pyzkfp loads the ZKFinger runtime through pythonnet at import time,
    # so a missing SDK shows up as any of these.
    from pyzkfp import ZKFP2  # type: ignore
    SDK_IMPORT_ERROR: str | None = None
except (ImportError, OSError, RuntimeError) as e:
    ZKFP2 = None
    SDK_IMPORT_ERROR = str(e)


class FingerprintReader(Protocol):
    """The six vendor operations the capture flow relies on."""

    def init(self) -> int:
        # pyzkfp raises on negative SDK codes (no device, library init failure)
        try:
            self._zk.Init()
            return int(self._zk.GetDeviceCount() or 0)
        except Exception as e:
            logger.warning("ZKFinger Init failed: %s", e)
            return 0

    def open_device(self, index: int) -> Any:
        try:
            handle = self._zk.OpenDevice(index)
        except Exception as e:
            logger.warning("ZKFinger OpenDevice(%d) failed: %s", index, e)
            return None
        # Some pyzkfp releases only keep the handle on the instance.
        return handle or getattr(self._zk, "hDevice", None)

    def close_device(self, handle: Any) -> None:
        self._zk.CloseDevice()

    def acquire(self, handle: Any) -> tuple[bytes, bytes] | None:
        capture = self._zk.AcquireFingerprint()
        if not capture:
            return None
        template, image = capture[0], capture[1]
        return bytes(list(template))[:FP_BUFFER_SIZE], bytes(list(image or []))[:IMG_BUFFER_SIZE]

    def merge(self, handle: Any, t1: bytes, t2: bytes, t3: bytes) -> bytes | None:
        # DBMerge raises when the samples cannot be combined (SDK code -22)
        try:
            result = self._zk.DBMerge(t1, t2, t3)
        except Exception as e:
            logger.warning("ZKFinger DBMerge failed: %s", e)
            return None
        if not result:
            return None
        if isinstance(result, tuple):
            merged, size = result[0], result[1]
            if not merged or not size:
                return None
            return bytes(list(merged))[: int(size)]
        return bytes(list(result))

    def terminate(self) -> None:
        self._zk.Terminate()


def load_reader() -> FingerprintReader | None:
    """
    Returns the hardware capability, or None when the SDK is absent or the
    reader is disabled. None switches capture to placeholder mode.
    """
    if not READER_ENABLED:
        logger.info("Fingerprint reader disabled by configuration")
        return None
    if ZKFP2 is None:
        logger.warning("ZKFinger SDK not available (%s); capture runs in placeholder mode", SDK_IMPORT_ERROR)
        return None
    try:
        return ZKFingerReader()
    except Exception as e:
        logger.warning("ZKFinger SDK failed to load: %s", e)
        return None


def find_sdk_libraries() -> list[str]:
    """Lists zk*/fp* DLLs in the Windows system folders (empty elsewhere)."""
    system_root = Path(os.getenv("SystemRoot", r"C:\Windows"))
    found: list[str] = []
    for folder in ("System32", "SysWOW64"):
        base = system_root / folder
        if not base.is_dir():
            continue
        for pattern in ("*zk*.dll", "*fp*.dll"):
            found.extend(sorted(p.name for p in base.glob(pattern)))
    return found
