import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from backend.config import (
    CAPTURE_MAX_SAMPLES,
    CAPTURE_POLL_INTERVAL_MS,
    CAPTURE_SAMPLE_TIMEOUT_MS,
    CAPTURE_SAMPLES,
)
from backend.errors import (
    CaptureTimeout,
    ConflictError,
    DeviceNotFound,
    HandleOpenFailed,
    ValidationError,
)
from backend.reader import FingerprintReader

logger = logging.getLogger(__name__)

PLACEHOLDER_WARNING = "SDK ZKFinger no instalado: template placeholder guardado"
FALLBACK_WARNING = "No se pudieron fusionar las lecturas; se guardo la primera lectura sin fusionar"


class CapturePhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    POLLING = "polling"
    SAMPLE_ACQUIRED = "sample_acquired"
    FUSING = "fusing"
    DONE = "done"
    FALLBACK = "fallback"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class CaptureResult:
    template: bytes
    samples: int
    fused: bool = False
    placeholder: bool = False
    warning: str | None = None

    @property
    def origin(self) -> str:
        if self.placeholder:
            return "placeholder"
        return "fusionado" if self.fused else "lectura"


def placeholder_template(dni: str, now: float | None = None) -> bytes:
    """Non-biometric stand-in, deterministic for a given identity and instant."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"placeholder-{dni}-{millis}".encode("utf-8")


class CaptureService:
    """
    Drives the fingerprint reader through N samples and fuses them.

    Owns the single reader handle: it is opened on first use, reused across
    captures, and released by `close()`. Only one capture runs at a time; a
    concurrent request fails with ConflictError instead of queuing. With no
    reader capability (SDK absent), captures return a placeholder template.
    """

    def __init__(
        self,
        reader: FingerprintReader | None,
        *,
        samples: int = CAPTURE_SAMPLES,
        sample_timeout_ms: int = CAPTURE_SAMPLE_TIMEOUT_MS,
        poll_interval_ms: int = CAPTURE_POLL_INTERVAL_MS,
    ):
        self._reader = reader
        self.samples = samples
        self.sample_timeout_ms = sample_timeout_ms
        self.poll_interval_ms = poll_interval_ms
        self._guard = asyncio.Lock()
        self._handle: Any = None
        self.phase = CapturePhase.IDLE

    @property
    def sdk_available(self) -> bool:
        return self._reader is not None

    @property
    def active(self) -> bool:
        return self._guard.locked()

    @property
    def connected(self) -> bool:
        return self._handle is not None

    def status(self) -> dict[str, Any]:
        return {
            "sdkDisponible": self.sdk_available,
            "capturaActiva": self.active,
            "conectado": self.connected,
            "fase": self.phase.value,
        }

    async def capture(self, dni: str, samples: int | None = None) -> CaptureResult:
        count = self.samples if samples is None else int(samples)
        if count < 1 or count > CAPTURE_MAX_SAMPLES:
            raise ValidationError(f"lecturas debe estar entre 1 y {CAPTURE_MAX_SAMPLES}")
        if self._guard.locked():
            raise ConflictError("Ya hay una captura en progreso")

        async with self._guard:
            if self._reader is None:
                logger.warning("Reader SDK unavailable; placeholder template for DNI %s", dni)
                self.phase = CapturePhase.DONE
                return CaptureResult(
                    template=placeholder_template(dni),
                    samples=0,
                    placeholder=True,
                    warning=PLACEHOLDER_WARNING,
                )

            try:
                return await self._run(count)
            except (CaptureTimeout, DeviceNotFound, HandleOpenFailed):
                self.phase = CapturePhase.ERROR
                raise
            except Exception:
                self.phase = CapturePhase.ERROR
                logger.exception("Capture failed; closing reader")
                self._release()
                raise

    async def _run(self, count: int) -> CaptureResult:
        handle = await self._open()
        logger.info("Capturing %d samples - place the finger on the reader", count)

        templates: list[bytes] = []
        for i in range(count):
            self.phase = CapturePhase.POLLING
            template = await self._wait_for_sample(handle)
            templates.append(template)
            self.phase = CapturePhase.SAMPLE_ACQUIRED
            logger.info("Sample %d/%d OK (%d bytes)", i + 1, count, len(template))

        if count == 1:
            self.phase = CapturePhase.DONE
            return CaptureResult(template=templates[0], samples=1)

        if len(templates) >= 3:
            self.phase = CapturePhase.FUSING
            try:
                merged = await asyncio.to_thread(self._reader.merge, handle, templates[0], templates[1], templates[2])
            except Exception as e:
                logger.warning("Template merge raised: %s", e)
                merged = None
            if merged:
                self.phase = CapturePhase.DONE
                return CaptureResult(template=merged, samples=len(templates), fused=True)

        self.phase = CapturePhase.FALLBACK
        logger.warning("Template merge unavailable or failed; using first raw sample (%d bytes)", len(templates[0]))
        return CaptureResult(
            template=templates[0],
            samples=len(templates),
            warning=FALLBACK_WARNING,
        )

    async def _open(self) -> Any:
        if self._handle is not None:
            return self._handle

        self.phase = CapturePhase.INITIALIZING
        count = await asyncio.to_thread(self._reader.init)
        if count <= 0:
            raise DeviceNotFound(f"No se encontraron lectores de huella (codigo {count})")

        handle = await asyncio.to_thread(self._reader.open_device, 0)
        if not handle:
            await asyncio.to_thread(self._reader.terminate)
            raise HandleOpenFailed("No se pudo abrir el lector SLK20R")

        self._handle = handle
        logger.info("Fingerprint reader opened")
        return handle

    async def _wait_for_sample(self, handle: Any) -> bytes:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.sample_timeout_ms / 1000
        interval = self.poll_interval_ms / 1000
        while True:
            sample = await asyncio.to_thread(self._reader.acquire, handle)
            if sample:
                return bytes(sample[0])
            if loop.time() >= deadline:
                raise CaptureTimeout(f"Timeout esperando huella ({self.sample_timeout_ms} ms)")
            await asyncio.sleep(interval)

    def _release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None or self._reader is None:
            return
        try:
            self._reader.close_device(handle)
            self._reader.terminate()
        except Exception as e:
            logger.warning("Closing reader failed: %s", e)

    def close(self) -> bool:
        """Releases the cached handle. Returns whether one was open."""
        was_open = self._handle is not None
        self._release()
        if was_open:
            self.phase = CapturePhase.CLOSED
            logger.info("Fingerprint reader closed")
        return was_open
