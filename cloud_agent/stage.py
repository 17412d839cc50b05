from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from cloud_agent.cloud_client import ROLE_MODEL, ROLE_USER, ModelService
from config import StageSettings

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "gemini-2.0-flash"


@dataclass(frozen=True)
class Message:
    role: str  # "user" or "model"
    content: str


@dataclass(frozen=True)
class StageProfile:
    name: str
    section: str  # header used in the model config
    model_id: str = DEFAULT_MODEL_ID
    import_context: bool = True


STEPPER = StageProfile("Stepper", "QueryStepper")
TAGGER = StageProfile("Tagger", "Tagger")
GENERATOR = StageProfile("Generator", "CommandGenerator")
CONSOLIDATOR = StageProfile("Consolidator", "CommandConsolidator")
VERIFIER = StageProfile("Verifier", "CommandVerifier")

STAGE_PROFILES: Tuple[StageProfile, ...] = (STEPPER, TAGGER, GENERATOR, CONSOLIDATOR, VERIFIER)


class StageTimeout(RuntimeError):
    pass


class Stage:
    """One model-backed text transformer with its own conversation.

    ``send`` records the input and fires the model call on a worker thread;
    the reply lands in this stage's reply queue, tagged with the request
    number, and ``receive`` picks up the reply for a given request.
    """

    def __init__(
        self,
        profile: StageProfile,
        service: ModelService,
        *,
        context_files: Optional[List[str]] = None,
        import_context: Optional[bool] = None,
        files=None,
    ):
        self.profile = profile
        self.service = service
        self.context_files = list(context_files or [])
        self.import_context = profile.import_context if import_context is None else import_context
        self.files = files
        self.history: List[Message] = []
        self._replies: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._seq = 0

    @property
    def name(self) -> str:
        return self.profile.name

    def load_context(self) -> int:
        """Seed the history with the configured context files. Returns how many loaded."""
        if not self.import_context or self.files is None:
            return 0
        loaded = 0
        for path in self.context_files:
            text = self.files.read(path)
            if not text:
                logger.warning("Failed to load context for %s from %s", self.name, path)
                continue
            with self._lock:
                self.history.append(Message(ROLE_USER, text))
            loaded += 1
            logger.debug("Context for %s loaded from %s", self.name, path)
        return loaded

    def send(self, text: str) -> int:
        with self._lock:
            self._seq += 1
            seq = self._seq
            turns = list(self.history)
            self.history.append(Message(ROLE_USER, text))
        logger.debug("→ Sending to %s (#%d): %s", self.name, seq, text)
        threading.Thread(
            target=self._call, args=(seq, turns, text), name=f"stage-{self.name}-{seq}", daemon=True
        ).start()
        return seq

    def _call(self, seq: int, turns: List[Message], text: str) -> None:
        try:
            reply = self.service.generate(turns, text) or ""
        except Exception:
            # Collaborator contract is "empty text on failure"
            logger.exception("Model service for %s raised", self.name)
            reply = ""
        with self._lock:
            self.history.append(Message(ROLE_MODEL, reply))
        logger.debug("← Response from %s (#%d): %s", self.name, seq, reply)
        self._replies.put((seq, reply))

    def receive(self, seq: int, timeout: Optional[float] = None) -> str:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                got, reply = self._replies.get(timeout=remaining)
            except queue.Empty:
                raise StageTimeout(f"{self.name} did not answer within {timeout}s") from None
            if got == seq:
                return reply
            logger.debug("Dropping stale reply #%d from %s", got, self.name)

    def request(self, text: str, timeout: Optional[float] = None) -> str:
        return self.receive(self.send(text), timeout)

    def clear_history(self) -> None:
        with self._lock:
            self.history.clear()

    def export_history(self, path: str) -> None:
        with self._lock:
            lines = [f"[{m.role}] {m.content}\n" for m in self.history]
        Path(path).write_text("".join(lines), encoding="utf-8")

    def load_history(self, path: str) -> None:
        """Replace the history with a transcript written by ``export_history``.

        Only lines starting with ``[user] `` or ``[model] `` are kept.
        """
        loaded: List[Message] = []
        for line in Path(path).read_text(encoding="utf-8").splitlines():
            for role in (ROLE_USER, ROLE_MODEL):
                prefix = f"[{role}] "
                if line.startswith(prefix):
                    loaded.append(Message(role, line[len(prefix):]))
        with self._lock:
            self.history = loaded


def create_stages(
    settings: Mapping[str, StageSettings],
    make_service: Callable[[StageProfile, StageSettings], ModelService],
    files=None,
) -> Dict[str, Stage]:
    """Build all five stages, keyed by role name.

    *settings* may be keyed by config section (``CommandGenerator``) or role
    name (``Generator``); missing sections fall back to the profile defaults.
    """
    stages: Dict[str, Stage] = {}
    for profile in STAGE_PROFILES:
        s = settings.get(profile.section) or settings.get(profile.name) or StageSettings(
            import_context=profile.import_context
        )
        stage = Stage(
            profile,
            make_service(profile, s),
            context_files=s.context_files,
            import_context=s.import_context,
            files=files,
        )
        loaded = stage.load_context()
        logger.info(
            "Stage %s ready (model=%s, context files=%d)",
            profile.name, s.model_id or profile.model_id, loaded,
        )
        stages[profile.name] = stage
    return stages
