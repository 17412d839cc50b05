#!/usr/bin/env python3
# Pipeline orchestrator:
# - Stepper breaks the request into steps (JSON)
# - Tagger labels steps with documentation tags; tags are swapped for doc text
# - Generator writes commands (or asks the user a question)
# - Consolidator merges them, Verifier checks them
# - Verified payload goes to the command sink; a failed check goes back to
#   Generator with the reason, a bounded number of times

from __future__ import annotations
import json, logging, re, threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from cloud_agent.cloud_client import extract_json, strip_fences
from cloud_agent.stage import Stage, StageTimeout

logger = logging.getLogger(__name__)

ASK_USER_RE = re.compile(r"ask_user:\s*(.+)", re.IGNORECASE)
UNKNOWN_FAILURE = "Unknown verification failure"
TAG_FIELDS = ("tag", "tags")

RETRY_TEMPLATE = (
    "The command you generated has failed verification due to the following reason:\n"
    "\"{reason}\"\n"
    "\n"
    "Please fix the issue and regenerate the correct JSON output for the terminal command steps.\n"
    "\n"
    "If you require additional input from the user to resolve the issue, include a line starting with:\n"
    "ask_user: your question here"
)

USER_RESPONSE_TEMPLATE = (
    "The user has provided the following input in response to your previous request:\n"
    "\"{answer}\"\n"
    "\n"
    "Please continue by generating the correct JSON output."
)


class PipelineState(Enum):
    IDLE = "idle"
    STEPPING = "stepping"
    TAGGING = "tagging"
    GENERATING = "generating"
    CONSOLIDATING = "consolidating"
    VERIFYING = "verifying"
    ASKING_USER = "asking_user"
    DONE = "done"
    HALTED = "halted"
    FAILED = "failed"


STAGE_STATES = {
    "Stepper": PipelineState.STEPPING,
    "Tagger": PipelineState.TAGGING,
    "Generator": PipelineState.GENERATING,
    "Consolidator": PipelineState.CONSOLIDATING,
    "Verifier": PipelineState.VERIFYING,
}


class StageOutputError(ValueError):
    pass


# ---------- payload transforms ----------
def _dumps(doc: Any) -> str:
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False)


def load_steps(text: str, stage: str) -> Dict[str, Any]:
    """Parse *text* as an object holding a "steps" array."""
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise StageOutputError(f"{stage} reply is not valid JSON: {e}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("steps"), list):
        raise StageOutputError(f"{stage} reply has no \"steps\" array")
    if not all(isinstance(s, dict) for s in doc["steps"]):
        raise StageOutputError(f"{stage} reply has a step that is not an object")
    return doc


def collect_tags(step: Mapping[str, Any]) -> List[str]:
    """Merge legacy ``tag`` and ``tags`` into one lower-cased, ordered, de-duplicated list."""
    raw: List[Any] = [step.get("tag")]
    tags = step.get("tags")
    if isinstance(tags, list):
        raw.extend(tags)
    elif isinstance(tags, str):
        raw.append(tags)
    seen: Dict[str, None] = {}
    for t in raw:
        if t is None or isinstance(t, (dict, list)):
            continue
        t = str(t).strip().lower()  # numbers and booleans count as tags too
        if t:
            seen.setdefault(t, None)
    return list(seen)


def inject_documentation(doc: Mapping[str, Any], resolve: Callable[[str], Optional[str]]) -> Dict[str, Any]:
    """Return a copy of *doc* where each step's tags are replaced by a "documentation" list."""
    steps = []
    for step in doc["steps"]:
        docs = []
        for tag in collect_tags(step):
            text = resolve(tag)
            if text is not None:
                docs.append(text)
        new_step = {k: v for k, v in step.items() if k not in TAG_FIELDS and k != "documentation"}
        new_step["documentation"] = docs
        steps.append(new_step)
    return {**doc, "steps": steps}


def strip_documentation(doc: Mapping[str, Any]) -> Dict[str, Any]:
    steps = [{k: v for k, v in step.items() if k != "documentation"} for step in doc["steps"]]
    return {**doc, "steps": steps}


def commands_from_payload(payload: Any) -> List[str]:
    """Commands of a verified payload, in execution order.

    "consolidated_commands" ({commands}) wins when non-empty; otherwise "steps" ({command}).
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(strip_fences(payload))
        except json.JSONDecodeError:
            logger.error("Final payload is not valid JSON")
            return []
    if not isinstance(payload, dict):
        return []

    def pick(items: Any, key: str) -> List[str]:
        if not isinstance(items, list):
            return []
        return [
            it[key] for it in items
            if isinstance(it, dict) and isinstance(it.get(key), str) and it[key].strip()
        ]

    return pick(payload.get("consolidated_commands"), "commands") or pick(payload.get("steps"), "command")


# ---------- orchestrator ----------
class PipelineOrchestrator:
    """
    Drives one request at a time through the five stages.

    All work happens on a single dispatch thread, so at most one stage request
    is ever outstanding. ``submit`` and ``submit_user_response`` return a
    Future resolving to the state the run stopped in.
    """

    def __init__(
        self,
        stages: Mapping[str, Stage],
        resolver,
        *,
        on_final_command: Optional[Callable[[str], Any]] = None,
        on_ask_user: Optional[Callable[[str], Any]] = None,
        on_stage_response: Optional[Callable[[str, str], Any]] = None,
        on_failure: Optional[Callable[[str], Any]] = None,
        max_verification_retries: int = 3,
        stage_timeout: Optional[float] = None,
    ):
        self.stepper = stages["Stepper"]
        self.tagger = stages["Tagger"]
        self.generator = stages["Generator"]
        self.consolidator = stages["Consolidator"]
        self.verifier = stages["Verifier"]
        self.resolver = resolver
        self.on_final_command = on_final_command
        self.on_ask_user = on_ask_user
        self.on_stage_response = on_stage_response
        self.on_failure = on_failure
        self.max_verification_retries = max_verification_retries
        self.stage_timeout = stage_timeout or None

        self._handlers: Dict[str, Callable[[str], Tuple[Optional[Stage], Optional[str]]]] = {
            "Stepper": self.on_stepper_result,
            "Tagger": self.on_tagger_result,
            "Generator": self.on_generator_result,
            "Consolidator": self.on_consolidator_result,
            "Verifier": self.on_verifier_result,
        }
        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._dispatch = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline")

        self.retries = 0
        self.last_failure_reason: Optional[str] = None
        self.pending_question: Optional[str] = None
        self.final_payload: Optional[str] = None

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    def _set_state(self, state: PipelineState) -> None:
        with self._lock:
            self._state = state
        logger.debug("Pipeline state → %s", state.value)

    # ---------- public API ----------
    def submit(self, query: str) -> "Future[PipelineState]":
        logger.info("Submitting query: %s", query[:100])
        return self._dispatch.submit(self._start, query)

    def submit_user_response(self, answer: str) -> "Optional[Future[PipelineState]]":
        with self._lock:
            if self._state is not PipelineState.ASKING_USER:
                logger.warning("No question pending; ignoring user response")
                return None
            self._state = PipelineState.GENERATING
            self.pending_question = None
        message = USER_RESPONSE_TEMPLATE.format(answer=answer)
        return self._dispatch.submit(self._drive, self.generator, message)

    def close(self) -> None:
        self._dispatch.shutdown(wait=False)

    # ---------- drive loop ----------
    def _start(self, query: str) -> PipelineState:
        self.retries = 0
        self.last_failure_reason = None
        self.pending_question = None
        self.final_payload = None
        return self._drive(self.stepper, query)

    def _drive(self, stage: Optional[Stage], message: Optional[str]) -> PipelineState:
        while stage is not None and message is not None:
            self._set_state(STAGE_STATES[stage.name])
            try:
                reply = stage.request(message, timeout=self.stage_timeout)
                self._notify(self.on_stage_response, stage.name, reply)
                stage, message = self._handlers[stage.name](reply)
            except (StageOutputError, StageTimeout) as e:
                logger.error("Pipeline halted at %s: %s", stage.name, e)
                self._set_state(PipelineState.HALTED)
                break
            except Exception:
                logger.exception("Pipeline halted at %s", stage.name)
                self._set_state(PipelineState.HALTED)
                break
        return self.state

    def _notify(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Pipeline callback %s raised", callback)

    # ---------- stage handlers ----------
    def on_stepper_result(self, text: str):
        extracted = extract_json(text)
        if extracted is None:
            raise StageOutputError("Skipping Tagger. Not valid JSON.")
        return self.tagger, extracted

    def on_tagger_result(self, text: str):
        doc = load_steps(strip_fences(text), "Tagger")
        enriched = inject_documentation(doc, self.resolver.resolve)
        return self.generator, _dumps(enriched)

    def on_generator_result(self, text: str):
        cleaned = strip_fences(text)
        match = ASK_USER_RE.search(cleaned)
        if match:
            question = match.group(1).strip()
            logger.info("Model requested user input: %s", question)
            self.pending_question = question
            self._set_state(PipelineState.ASKING_USER)
            self._notify(self.on_ask_user, question)
            return None, None
        doc = load_steps(cleaned, "Generator")
        return self.consolidator, _dumps(strip_documentation(doc))

    def on_consolidator_result(self, text: str):
        return self.verifier, text

    def on_verifier_result(self, text: str):
        cleaned = strip_fences(text)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise StageOutputError(f"Verifier reply is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StageOutputError("Verifier reply is not a JSON object")

        if data.get("verification_result", "") == "success":
            self.final_payload = cleaned
            self._set_state(PipelineState.DONE)
            self._notify(self.on_final_command, cleaned)
            return None, None

        reason = data.get("reason")
        reason = UNKNOWN_FAILURE if reason is None else str(reason)
        self.last_failure_reason = reason
        logger.error("Verification failed: %s", reason)

        if self.retries >= self.max_verification_retries:
            logger.error("Giving up after %d verification retries", self.retries)
            self._set_state(PipelineState.FAILED)
            self._notify(self.on_failure, reason)
            return None, None
        self.retries += 1
        return self.generator, RETRY_TEMPLATE.format(reason=reason)
