from __future__ import annotations

import os
import threading
from dataclasses import dataclass, replace
from typing import Optional


DEFAULT_BEGIN_SENTENCE = "Hey there, I'm your personal AI therapist, how can I help you?"
DEFAULT_AGENT_PROMPT = (
    "Task: As a professional therapist, your responsibilities are comprehensive and "
    "patient-centered. You establish a positive and trusting rapport with patients, diagnosing "
    "and treating mental health disorders. You create tailored treatment plans based on "
    "individual patient needs and circumstances, provide counseling, and adjust plans as "
    "needed. You refer patients to external specialists or agencies when required, follow all "
    "safety protocols and maintain strict client confidentiality.\n\n"
    "Conversational Style: Communicate concisely and conversationally. Aim for responses in "
    "short, clear prose, ideally under 10 words.\n\n"
    "Personality: Be empathetic and understanding, balancing compassion with a professional "
    "stance on what is best for the patient. Listen actively and empathize without overly "
    "agreeing with the patient."
)


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class ServerConfig:
    # Platform config message
    auto_reconnect: bool = True
    call_details: bool = True

    # Websocket session
    inbound_queue_max: int = 256
    outbound_queue_max: int = 256
    ws_max_frame_bytes: int = 262_144
    ws_write_timeout_ms: int = 400
    ws_max_consecutive_write_timeouts: int = 2
    ws_structured_logging: bool = True

    # Model invocation
    llm_provider: str = "fake"  # fake | openai
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.3
    openai_max_tokens: int = 200
    model_timeout_ms: int = 8000
    max_tool_rounds: int = 2
    tool_timeout_ms: int = 1500
    apology_text: str = "Sorry, I'm having trouble right now. Could you say that again?"

    # Transcript log
    transcript_log: str = "memory"  # memory | jsonl | firestore
    transcript_log_path: str = "data/transcripts.jsonl"
    firebase_project_id: str = ""
    firebase_collection: str = "transcripts"
    firebase_client_email: str = ""
    firebase_private_key: str = ""

    # Platform REST API
    retell_api_key: str = ""
    retell_base_url: str = "https://api.retellai.com"
    retell_http_timeout_ms: int = 15000

    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "ServerConfig":
        llm_provider = _getenv_str("LLM_PROVIDER", "fake").strip().lower()
        if llm_provider not in {"fake", "openai"}:
            llm_provider = "fake"
        transcript_log = _getenv_str("TRANSCRIPT_LOG", "memory").strip().lower()
        if transcript_log not in {"memory", "jsonl", "firestore"}:
            transcript_log = "memory"

        return ServerConfig(
            auto_reconnect=_getenv_bool("RETELL_AUTO_RECONNECT", True),
            call_details=_getenv_bool("RETELL_CALL_DETAILS", True),
            inbound_queue_max=_getenv_int("INBOUND_QUEUE_MAX", 256),
            outbound_queue_max=_getenv_int("OUTBOUND_QUEUE_MAX", 256),
            ws_max_frame_bytes=_getenv_int("WS_MAX_FRAME_BYTES", 262_144),
            ws_write_timeout_ms=_getenv_int("WS_WRITE_TIMEOUT_MS", 400),
            ws_max_consecutive_write_timeouts=_getenv_int("WS_MAX_CONSECUTIVE_WRITE_TIMEOUTS", 2),
            ws_structured_logging=_getenv_bool("WEBSOCKET_STRUCTURED_LOGGING", True),
            llm_provider=llm_provider,
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_temperature=_getenv_float("OPENAI_TEMPERATURE", 0.3),
            openai_max_tokens=_getenv_int("OPENAI_MAX_TOKENS", 200),
            model_timeout_ms=_getenv_int("MODEL_TIMEOUT_MS", 8000),
            max_tool_rounds=max(0, _getenv_int("MAX_TOOL_ROUNDS", 2)),
            tool_timeout_ms=_getenv_int("TOOL_TIMEOUT_MS", 1500),
            apology_text=_getenv_str(
                "APOLOGY_TEXT", "Sorry, I'm having trouble right now. Could you say that again?"
            ),
            transcript_log=transcript_log,
            transcript_log_path=_getenv_str("TRANSCRIPT_LOG_PATH", "data/transcripts.jsonl"),
            firebase_project_id=_getenv_str("FIREBASE_PROJECT_ID", ""),
            firebase_collection=_getenv_str("FIREBASE_COLLECTION", "transcripts"),
            firebase_client_email=_getenv_str("FIREBASE_CLIENT_EMAIL", ""),
            # Keys pasted into env files usually carry literal "\n" sequences.
            firebase_private_key=_getenv_str("FIREBASE_PRIVATE_KEY", "").replace("\\n", "\n"),
            retell_api_key=_getenv_str("RETELL_API_KEY", ""),
            retell_base_url=_getenv_str("RETELL_BASE_URL", "https://api.retellai.com"),
            retell_http_timeout_ms=_getenv_int("RETELL_HTTP_TIMEOUT_MS", 15000),
            log_level=_getenv_str("LOG_LEVEL", "INFO").strip().upper(),
        )


@dataclass(frozen=True, slots=True)
class PromptConfig:
    begin_sentence: str = DEFAULT_BEGIN_SENTENCE
    agent_prompt: str = DEFAULT_AGENT_PROMPT

    @staticmethod
    def from_env() -> "PromptConfig":
        return PromptConfig(
            begin_sentence=_getenv_str("BEGIN_SENTENCE", DEFAULT_BEGIN_SENTENCE),
            agent_prompt=_getenv_str("AGENT_PROMPT", DEFAULT_AGENT_PROMPT),
        )


class PromptStore:
    """
    Process-wide greeting/instruction holder.

    Readers take an immutable PromptConfig snapshot; writers swap in a new one under a
    lock, so a call that already started keeps the prompts it was created with.
    """

    def __init__(self, initial: Optional[PromptConfig] = None) -> None:
        self._lock = threading.Lock()
        self._current = initial or PromptConfig()

    def snapshot(self) -> PromptConfig:
        return self._current

    def update(
        self,
        *,
        begin_sentence: Optional[str] = None,
        agent_prompt: Optional[str] = None,
    ) -> PromptConfig:
        with self._lock:
            changes: dict[str, str] = {}
            if begin_sentence:
                changes["begin_sentence"] = begin_sentence
            if agent_prompt:
                changes["agent_prompt"] = agent_prompt
            if changes:
                self._current = replace(self._current, **changes)
            return self._current
