import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore, Message, Persona, SearchHit, utcnow
from chat_core.domain.exceptions import StorageError
from chat_core.infrastructure.logging.logger import log_event


EXPORT_VERSION = "1.0"
SEARCH_LIMIT = 100
CONVERSATION_FIELDS = {"title", "updated_at", "persona_id", "provider", "model", "summary"}
MESSAGE_FIELDS = {"content", "created_at", "persona_id"}


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """基于目录树的会话存储。

    布局：
        <root>/conversations/<id>/meta.json
        <root>/conversations/<id>/messages.jsonl
        <root>/personas.json

    所有写入先写临时文件再 os.replace，保证单个文件原子替换。消息写入按 id 幂等。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._personas_path = self._root / "personas.json"

    # ---- 会话 ----

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        cdir = self._conv_root / conversation.id
        try:
            cdir.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            raise StorageError(code="CONVERSATION_EXISTS", message=conversation.id)
        except OSError as e:
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e))
        self._write_meta(cdir, conversation)
        self._write_messages(cdir, conversation.messages)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        cdir = self._conv_root / conversation_id
        if not (cdir / "meta.json").exists():
            raise StorageError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        conv = self._read_meta(cdir)
        conv.messages = self._read_messages(cdir)
        return conv

    async def list_conversations(self) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in sorted(self._conv_root.glob("*/")):
            if not (cdir / "meta.json").exists():
                continue
            try:
                conv = self._read_meta(cdir)
                conv.messages = self._read_messages(cdir)
            except StorageError as exc:
                log_event(logging.WARNING, "Skipped unreadable conversation", path=str(cdir), error=exc.message)
                continue
            items.append(conv)
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    async def update_conversation(self, conversation_id: str, partial: Dict[str, Any]) -> None:
        unknown = set(partial) - CONVERSATION_FIELDS
        if unknown:
            raise StorageError(code="INVALID_FIELDS", message=", ".join(sorted(unknown)))
        cdir = self._conv_root / conversation_id
        if not (cdir / "meta.json").exists():
            raise StorageError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        conv = self._read_meta(cdir)
        for key, value in partial.items():
            setattr(conv, key, value)
        self._write_meta(cdir, conv)

    async def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise StorageError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise StorageError(code="STORE_DELETE_ERROR", message=str(e))

    # ---- 消息 ----

    async def append_messages(self, conversation_id: str, messages: List[Message]) -> None:
        cdir = self._conv_root / conversation_id
        if not (cdir / "meta.json").exists():
            raise StorageError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        existing = self._read_messages(cdir)
        index = {m.id: i for i, m in enumerate(existing)}
        for message in messages:
            if message.id in index:
                existing[index[message.id]] = message
            else:
                index[message.id] = len(existing)
                existing.append(message)
        self._write_messages(cdir, existing)

    async def update_message(self, message_id: str, partial: Dict[str, Any]) -> None:
        unknown = set(partial) - MESSAGE_FIELDS
        if unknown:
            raise StorageError(code="INVALID_FIELDS", message=", ".join(sorted(unknown)))
        for cdir in self._conv_root.glob("*/"):
            messages = self._read_messages(cdir)
            for message in messages:
                if message.id == message_id:
                    for key, value in partial.items():
                        setattr(message, key, value)
                    self._write_messages(cdir, messages)
                    return
        raise StorageError(code="MESSAGE_NOT_FOUND", message=message_id)

    async def search_messages(self, query: str) -> List[SearchHit]:
        needle = query.strip().lower()
        if not needle:
            return []
        hits: List[SearchHit] = []
        for conv in await self.list_conversations():
            for message in conv.messages:
                if needle in message.content.lower():
                    hits.append(SearchHit(conversation_id=conv.id, message=message, conversation_title=conv.title))
        hits.sort(key=lambda h: h.message.created_at, reverse=True)
        return hits[:SEARCH_LIMIT]

    # ---- 角色 ----

    async def list_personas(self) -> List[Persona]:
        if not self._personas_path.exists():
            return []
        try:
            data = json.loads(self._personas_path.read_text(encoding="utf-8"))
            return [Persona(**item) for item in data]
        except (OSError, ValueError, TypeError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        for persona in await self.list_personas():
            if persona.id == persona_id:
                return persona
        return None

    async def save_persona(self, persona: Persona) -> None:
        personas = [p for p in await self.list_personas() if p.id != persona.id]
        personas.append(persona)
        self._write_personas(personas)

    async def delete_persona(self, persona_id: str) -> None:
        personas = await self.list_personas()
        remaining = [p for p in personas if p.id != persona_id]
        if len(remaining) == len(personas):
            raise StorageError(code="PERSONA_NOT_FOUND", message=persona_id)
        self._write_personas(remaining)

    def _write_personas(self, personas: List[Persona]) -> None:
        payload = [
            {
                "id": p.id,
                "name": p.name,
                "description": p.description,
                "avatar": p.avatar,
                "is_default": p.is_default,
            }
            for p in personas
        ]
        self._atomic_write(self._personas_path, json.dumps(payload, ensure_ascii=False, indent=2))

    # ---- 导入导出 ----

    async def export_conversations(self) -> Dict[str, Any]:
        conversations = await self.list_conversations()
        return {
            "version": EXPORT_VERSION,
            "exportDate": _iso(utcnow()),
            "conversations": [self._conversation_to_dict(c) for c in conversations],
        }

    async def import_conversations(self, data: Dict[str, Any]) -> int:
        items = data.get("conversations") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise StorageError(code="INVALID_IMPORT", message="Invalid import data format")
        imported = 0
        for item in items:
            try:
                conv = self._conversation_from_dict(item)
            except (KeyError, ValueError, TypeError) as e:
                raise StorageError(code="INVALID_IMPORT", message=str(e))
            if (self._conv_root / conv.id).exists():
                continue
            await self.create_conversation(conv)
            imported += 1
        return imported

    # ---- 文件读写 ----

    def _read_meta(self, cdir: Path) -> Conversation:
        try:
            data = json.loads((cdir / "meta.json").read_text(encoding="utf-8"))
            return Conversation(
                id=data["id"],
                title=data.get("title") or "",
                created_at=_parse_dt(data["created_at"]),
                updated_at=_parse_dt(data["updated_at"]),
                persona_id=data.get("persona_id"),
                provider=data.get("provider"),
                model=data.get("model"),
                summary=data.get("summary") or "",
            )
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        obj = self._conversation_to_dict(conv)
        obj.pop("messages")
        self._atomic_write(cdir / "meta.json", json.dumps(obj, ensure_ascii=False))

    def _read_messages(self, cdir: Path) -> List[Message]:
        msgs_path = cdir / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            try:
                items.append(self._message_from_dict(json.loads(line)))
            except (ValueError, KeyError):
                continue
        return items

    def _write_messages(self, cdir: Path, messages: List[Message]) -> None:
        lines = [json.dumps(self._message_to_dict(m), ensure_ascii=False) for m in messages]
        self._atomic_write(cdir / "messages.jsonl", "".join(line + "\n" for line in lines))

    def _atomic_write(self, path: Path, text: str) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e))

    def _conversation_to_dict(self, conv: Conversation) -> Dict[str, Any]:
        return {
            "id": conv.id,
            "title": conv.title,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
            "persona_id": conv.persona_id,
            "provider": conv.provider,
            "model": conv.model,
            "summary": conv.summary,
            "messages": [self._message_to_dict(m) for m in conv.messages],
        }

    def _conversation_from_dict(self, data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data.get("updated_at") or data["created_at"]),
            messages=[self._message_from_dict(m) for m in data.get("messages") or []],
            persona_id=data.get("persona_id"),
            provider=data.get("provider"),
            model=data.get("model"),
            summary=data.get("summary") or "",
        )

    @staticmethod
    def _message_to_dict(message: Message) -> Dict[str, Any]:
        return {
            "id": message.id,
            "role": message.role,
            "content": message.content,
            "created_at": _iso(message.created_at),
            "persona_id": message.persona_id,
        }

    @staticmethod
    def _message_from_dict(data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_dt(data["created_at"]),
            persona_id=data.get("persona_id"),
        )
