from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

from .config import ServerConfig
from .protocol import TranscriptUtterance


class TranscriptLog(Protocol):
    async def append(self, call_id: str, utterances: Sequence[TranscriptUtterance]) -> None:
        ...

    async def aclose(self) -> None:
        ...


def _utterance_rows(utterances: Sequence[TranscriptUtterance]) -> list[dict[str, str]]:
    return [{"role": u.role, "content": u.content} for u in utterances]


@dataclass
class InMemoryTranscriptLog:
    batches: list[tuple[str, list[TranscriptUtterance]]] = field(default_factory=list)

    async def append(self, call_id: str, utterances: Sequence[TranscriptUtterance]) -> None:
        self.batches.append((call_id, list(utterances)))

    def for_call(self, call_id: str) -> list[list[TranscriptUtterance]]:
        return [batch for cid, batch in self.batches if cid == call_id]

    async def aclose(self) -> None:
        return


class JsonlTranscriptLog:
    """Append-only JSON Lines file, one line per observed batch."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _write_line(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def append(self, call_id: str, utterances: Sequence[TranscriptUtterance]) -> None:
        row = {
            "call_id": call_id,
            "ts_ms": int(time.time() * 1000),
            "transcript": _utterance_rows(utterances),
        }
        line = json.dumps(row, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        async with self._lock:
            await asyncio.to_thread(self._write_line, line)

    async def aclose(self) -> None:
        return


class FirestoreTranscriptLog:
    """
    Firestore sink: one document per batch in the configured collection.

    Lazily imports `firebase-admin` so tests and local runs never need credentials.
    """

    def __init__(
        self,
        *,
        project_id: str,
        client_email: str = "",
        private_key: str = "",
        collection: str = "transcripts",
    ) -> None:
        self._project_id = project_id
        self._client_email = client_email
        self._private_key = private_key
        self._collection = collection
        self._app: Any = None
        self._db: Any = None
        self._firestore: Any = None
        # append() runs in worker threads; only one of them may initialise the app.
        self._init_lock = threading.Lock()

    def _ensure_client(self) -> tuple[Any, Any]:
        if self._db is not None:
            return self._db, self._firestore
        with self._init_lock:
            if self._db is None:
                self._init_client()
        return self._db, self._firestore

    def _init_client(self) -> None:
        try:
            import firebase_admin  # type: ignore[import-not-found]
            from firebase_admin import credentials, firestore  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "FirestoreTranscriptLog requires the optional dependency 'firebase-admin'. "
                "Install with: python3 -m pip install -e '.[firestore]'"
            ) from e

        if self._client_email and self._private_key:
            cred = credentials.Certificate(
                {
                    "type": "service_account",
                    "project_id": self._project_id,
                    "client_email": self._client_email,
                    "private_key": self._private_key,
                    "token_uri": "https://oauth2.googleapis.com/token",
                }
            )
        else:
            cred = credentials.ApplicationDefault()
        name = f"transcripts-{self._project_id or 'default'}"
        try:
            self._app = firebase_admin.initialize_app(cred, {"projectId": self._project_id}, name=name)
        except ValueError:
            # Another sink in this process already registered the app.
            self._app = firebase_admin.get_app(name)
        self._firestore = firestore
        self._db = firestore.client(self._app)

    def _add_document(self, call_id: str, rows: list[dict[str, str]]) -> None:
        db, firestore = self._ensure_client()
        db.collection(self._collection).add(
            {
                "callId": call_id,
                "timestamp": firestore.SERVER_TIMESTAMP,
                "transcript": [r["content"] for r in rows],
                "utterances": rows,
            }
        )

    async def append(self, call_id: str, utterances: Sequence[TranscriptUtterance]) -> None:
        # The admin SDK is blocking; keep it off the event loop.
        await asyncio.to_thread(self._add_document, call_id, _utterance_rows(utterances))

    async def aclose(self) -> None:
        if self._app is not None:
            import firebase_admin  # type: ignore[import-not-found]

            firebase_admin.delete_app(self._app)
            self._app = None
            self._db = None


def build_transcript_log(cfg: ServerConfig) -> TranscriptLog:
    if cfg.transcript_log == "jsonl":
        return JsonlTranscriptLog(cfg.transcript_log_path)
    if cfg.transcript_log == "firestore":
        return FirestoreTranscriptLog(
            project_id=cfg.firebase_project_id,
            client_email=cfg.firebase_client_email,
            private_key=cfg.firebase_private_key,
            collection=cfg.firebase_collection,
        )
    return InMemoryTranscriptLog()
