"""ChatEngine：面向 UI 的会话引擎门面。

把 Provider、生成控制器、上下文构建、滚动摘要和持久化同步串起来，
并以“订阅 + 取消订阅回调”的方式向界面推送增量快照、会话列表和错误状态。
所有会话的运行时状态都挂在各自的 ConversationState 上，不使用全局标志。
"""

import asyncio
import logging
import re
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import (
    Conversation,
    ConversationStore,
    Message,
    Persona,
    SearchHit,
    new_message_id,
    utcnow,
)
from chat_core.domain.exceptions import BusinessError, RequestError, StorageError
from chat_core.domain.models import ModelDescriptor, SnapshotEvent
from chat_core.engine.context_window import ContextPolicy, build_context_window
from chat_core.engine.generation import GenerationController, GenerationHandle, GenerationState
from chat_core.engine.session_sync import SessionSynchronizer
from chat_core.engine.state import ConversationState
from chat_core.engine.summarizer import SummarizationScheduler
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import ProviderAdapter


DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50
PERSONA_FIELDS = {"name", "description", "avatar", "is_default"}

DEFAULT_PERSONAS: List[Dict[str, Any]] = [
    {
        "name": "Assistant",
        "description": "A helpful AI assistant ready to help with any questions",
        "avatar": "🤖",
        "is_default": True,
    },
    {
        "name": "Coding Mentor",
        "description": "An expert programmer who helps with coding questions and best practices",
        "avatar": "💻",
        "is_default": False,
    },
    {
        "name": "Creative Writer",
        "description": "A creative writing assistant for stories, poems, and imaginative content",
        "avatar": "✍️",
        "is_default": False,
    },
]

SnapshotListener = Callable[[SnapshotEvent], None]
ConversationListener = Callable[[List[Conversation]], None]
ErrorListener = Callable[[str, Optional[str]], None]


def derive_title(text: str) -> str:
    """取首条用户消息压缩空白后的前 50 个字符作为标题。"""

    collapsed = re.sub(r"\s+", " ", text).strip()
    return collapsed[:TITLE_MAX_CHARS] or DEFAULT_TITLE


class ChatEngine:
    def __init__(
        self,
        store: ConversationStore,
        providers: Mapping[str, ProviderAdapter],
        policy: Optional[ContextPolicy] = None,
        system_prompt: str = "",
        default_provider: Optional[str] = None,
        default_model: Optional[str] = None,
        read_timeout: Optional[float] = None,
        grace: Optional[float] = None,
        min_interval: Optional[float] = None,
        debounce: Optional[float] = None,
        summary_delay: Optional[float] = None,
        quiet_period: Optional[float] = None,
    ):
        self._store = store
        self._providers: Dict[str, ProviderAdapter] = dict(providers)
        self.policy = policy or ContextPolicy.from_settings()
        self.system_prompt = system_prompt
        self.default_provider = (default_provider or settings.default_provider).lower()
        self.default_model = settings.default_model if default_model is None else default_model

        self._states: Dict[str, ConversationState] = {}
        self._personas: Dict[str, Persona] = {}
        self._active_id: Optional[str] = None
        self._closed = False

        self._snapshot_listeners: List[Tuple[Optional[str], SnapshotListener]] = []
        self._conversation_listeners: List[ConversationListener] = []
        self._error_listeners: List[ErrorListener] = []

        self.controller = GenerationController(
            on_snapshot=self._dispatch_snapshot,
            on_finished=self._on_generation_finished,
            read_timeout=read_timeout,
            grace=grace,
            min_interval=min_interval,
            debounce=debounce,
        )
        self.summarizer = SummarizationScheduler(on_summary=self._apply_summary, delay=summary_delay)
        self.synchronizer = SessionSynchronizer(store, quiet_period=quiet_period)

    # ---- 查询 ----

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active_id

    @property
    def closed(self) -> bool:
        return self._closed

    def conversation(self, conversation_id: str) -> Conversation:
        return self._state(conversation_id).conversation

    def state(self, conversation_id: str) -> ConversationState:
        return self._state(conversation_id)

    def error_for(self, conversation_id: str) -> Optional[str]:
        return self._state(conversation_id).error

    def generation_state(self, conversation_id: str) -> GenerationState:
        return self.controller.query_state(conversation_id)

    def list_conversations(self) -> List[Conversation]:
        conversations = [s.conversation for s in self._states.values()]
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    def personas(self) -> List[Persona]:
        return list(self._personas.values())

    # ---- 生命周期 ----

    async def bootstrap(self) -> Optional[Conversation]:
        """加载角色与会话；首次运行时写入默认角色并新建一个会话。"""

        personas = await self._store.list_personas()
        if not personas:
            for item in DEFAULT_PERSONAS:
                persona = Persona(id=f"p-{uuid4().hex}", **item)
                await self._store.save_persona(persona)
                personas.append(persona)
            log_event(logging.INFO, "Seeded default personas", count=len(personas))
        self._personas = {p.id: p for p in personas}

        for conv in await self._store.list_conversations():
            if conv.id in self._states:
                continue
            state = ConversationState(conversation=conv)
            self.synchronizer.prime(state)
            self._states[conv.id] = state

        if not self._states:
            return await self.new_conversation()
        active = self.list_conversations()[0]
        self._active_id = active.id
        self._notify_conversations()
        log_event(logging.INFO, "Engine bootstrapped", conversations=len(self._states))
        return active

    async def aclose(self) -> None:
        """取消所有生成、关闭摘要调度并把未保存的变更写回存储。"""

        if self._closed:
            return
        self._closed = True
        for state in self._states.values():
            self.synchronizer.cancel(state)
        for state in list(self._states.values()):
            await self.controller.cancel_and_wait(state.generation)
        await self.summarizer.shutdown()
        await self.synchronizer.drain()
        for state in self._states.values():
            await self.synchronizer.flush(state)
        log_event(logging.INFO, "Engine closed", conversations=len(self._states))

    # ---- 会话管理 ----

    async def new_conversation(
        self,
        persona_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Conversation:
        if persona_id is None:
            persona_id = next((p.id for p in self._personas.values() if p.is_default), None)
        return await self._create_conversation(persona_id, provider, model)

    async def _create_conversation(
        self,
        persona_id: Optional[str],
        provider: Optional[str],
        model: Optional[str],
    ) -> Conversation:
        now = utcnow()
        conv = Conversation(
            id=f"c-{uuid4().hex}",
            title=DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            persona_id=persona_id,
            provider=(provider or self.default_provider).lower(),
            model=self.default_model if model is None else model,
        )
        await self._store.create_conversation(conv)
        state = ConversationState(conversation=conv)
        self.synchronizer.prime(state)
        self._states[conv.id] = state
        self._active_id = conv.id
        self._notify_conversations()
        log_event(logging.INFO, "Created conversation", conversation_id=conv.id, provider=conv.provider)
        return conv

    async def open_conversation(self, conversation_id: str) -> Conversation:
        """切换到指定会话，切换前先把当前会话的待保存变更写回。"""

        previous = self._states.get(self._active_id) if self._active_id else None
        if previous is not None and previous.conversation_id != conversation_id:
            self.synchronizer.cancel(previous)
            if not previous.is_generating:
                await self.synchronizer.flush(previous)

        state = self._states.get(conversation_id)
        if state is not None and (state.conversation.messages or state.is_generating):
            self._active_id = conversation_id
            self._notify_conversations()
            return state.conversation

        if state is not None:
            state.switch_in_progress = True
        try:
            conv = await self._store.get_conversation(conversation_id)
            if state is None:
                state = ConversationState(conversation=conv)
                self._states[conversation_id] = state
            else:
                state.conversation = conv
            self.synchronizer.prime(state)
        finally:
            if state is not None:
                state.switch_in_progress = False
        self._active_id = conversation_id
        self._notify_conversations()
        return state.conversation

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        state = self._state(conversation_id)
        conv = state.conversation
        conv.title = title.strip() or DEFAULT_TITLE
        try:
            await self._store.update_conversation(conversation_id, {"title": conv.title})
        except StorageError as exc:
            log_event(logging.WARNING, "Rename not persisted", conversation_id=conversation_id, error=exc.message)
            self.synchronizer.notify_mutation(state)
        self._notify_conversations()
        return conv

    async def delete_conversation(self, conversation_id: str) -> None:
        state = self._states.pop(conversation_id, None)
        if state is None:
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        self.synchronizer.cancel(state)
        await self.controller.cancel_and_wait(state.generation)
        self.synchronizer.cancel(state)
        try:
            await self._store.delete_conversation(conversation_id)
        except StorageError as exc:
            log_event(logging.WARNING, "Delete not persisted", conversation_id=conversation_id, error=exc.message)
        if self._active_id == conversation_id:
            remaining = self.list_conversations()
            self._active_id = remaining[0].id if remaining else None
        self._notify_conversations()
        log_event(logging.INFO, "Deleted conversation", conversation_id=conversation_id)

    async def duplicate_conversation(self, conversation_id: str) -> Conversation:
        source = self._state(conversation_id).conversation
        now = utcnow()
        copy = Conversation(
            id=f"c-{uuid4().hex}",
            title=f"{source.title} (Copy)",
            created_at=now,
            updated_at=now,
            messages=[
                Message(
                    id=new_message_id(),
                    role=m.role,
                    content=m.content,
                    created_at=m.created_at,
                    persona_id=m.persona_id,
                )
                for m in source.messages
                if m.frozen
            ],
            persona_id=source.persona_id,
            provider=source.provider,
            model=source.model,
            summary=source.summary,
        )
        await self._store.create_conversation(copy)
        state = ConversationState(conversation=copy)
        self.synchronizer.prime(state)
        self._states[copy.id] = state
        self._notify_conversations()
        return copy

    async def bind_model(self, conversation_id: str, provider: str, model: str) -> None:
        provider = provider.lower()
        if provider not in self._providers:
            raise RequestError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider}")
        state = self._state(conversation_id)
        state.conversation.provider = provider
        state.conversation.model = model
        await self._persist_binding(state, {"provider": provider, "model": model})

    async def bind_persona(self, conversation_id: str, persona_id: Optional[str]) -> Conversation:
        """切换会话角色，返回此后应使用的会话。

        已有消息的会话换角色时不原地改绑，而是另开一个绑定新角色的空会话并设为当前会话，
        旧角色的历史和摘要不会进入新角色的上下文。空会话原地改绑并清空摘要。
        """

        if persona_id is not None and persona_id not in self._personas:
            persona = await self._store.get_persona(persona_id)
            if persona is None:
                raise RequestError(code="UNKNOWN_PERSONA", message=f"Unknown persona: {persona_id}")
            self._personas[persona.id] = persona
        state = self._state(conversation_id)
        conv = state.conversation
        if conv.persona_id == persona_id:
            return conv
        if conv.messages:
            fresh = await self._create_conversation(persona_id, conv.provider, conv.model)
            log_event(
                logging.INFO,
                "Started conversation for new persona",
                conversation_id=fresh.id,
                previous_conversation_id=conv.id,
                persona_id=persona_id,
            )
            return fresh
        conv.persona_id = persona_id
        conv.summary = ""
        await self._persist_binding(state, {"persona_id": persona_id, "summary": ""})
        return conv

    async def clear_chat(self, conversation_id: str) -> Conversation:
        """清空聊天：清除错误状态，以相同的角色和模型开一个空会话。

        原会话保留在列表中，新会话没有历史也没有摘要。
        """

        state = self._state(conversation_id)
        self._set_error(state, None)
        conv = state.conversation
        return await self._create_conversation(conv.persona_id, conv.provider, conv.model)

    # ---- 角色管理 ----

    async def create_persona(self, name: str, description: str, avatar: Optional[str] = None) -> Persona:
        name = name.strip()
        if not name:
            raise RequestError(code="INVALID_PERSONA", message="Persona name is required")
        persona = Persona(id=f"p-{uuid4().hex}", name=name, description=description.strip(), avatar=avatar)
        await self._store.save_persona(persona)
        self._personas[persona.id] = persona
        log_event(logging.INFO, "Created persona", persona_id=persona.id)
        return persona

    async def update_persona(self, persona_id: str, **fields: Any) -> Persona:
        persona = self._persona(persona_id)
        unknown = set(fields) - PERSONA_FIELDS
        if unknown:
            raise RequestError(code="INVALID_FIELDS", message=", ".join(sorted(unknown)))
        if "name" in fields and not str(fields["name"]).strip():
            raise RequestError(code="INVALID_PERSONA", message="Persona name is required")
        updated = replace(persona, **fields)
        await self._store.save_persona(updated)
        self._personas[persona_id] = updated
        log_event(logging.INFO, "Updated persona", persona_id=persona_id, fields=sorted(fields))
        return updated

    async def delete_persona(self, persona_id: str) -> None:
        """删除角色，并把仍绑定该角色的会话解绑。"""

        self._persona(persona_id)
        await self._store.delete_persona(persona_id)
        del self._personas[persona_id]
        for state in list(self._states.values()):
            if state.conversation.persona_id == persona_id:
                state.conversation.persona_id = None
                await self._persist_binding(state, {"persona_id": None})
        log_event(logging.INFO, "Deleted persona", persona_id=persona_id)

    async def duplicate_persona(self, persona_id: str) -> Persona:
        source = self._persona(persona_id)
        copy = replace(source, id=f"p-{uuid4().hex}", name=f"{source.name} (Copy)", is_default=False)
        await self._store.save_persona(copy)
        self._personas[copy.id] = copy
        return copy

    # ---- 发送与取消 ----

    async def send_turn(self, conversation_id: str, text: str) -> GenerationHandle:
        """发送一条用户消息并开始流式生成。

        同一会话的多次发送按到达顺序排队，每次都会取代正在进行的生成（新意图优先）。
        上下文基于追加用户消息之前的历史构建，新消息作为最后一个 user turn 加入。
        """

        if self._closed:
            raise RequestError(code="ENGINE_CLOSED", message="Chat engine is closed")
        if not text.strip():
            raise RequestError(code="EMPTY_MESSAGE", message="Message is empty")
        state = self._state(conversation_id)

        async with state.send_lock:
            self._set_error(state, None)
            while state.is_generating:
                await self.controller.cancel_and_wait(state.generation)

            conv = state.conversation
            try:
                provider = self._provider_for(conv)
                model = conv.model or self.default_model
                if not model:
                    raise RequestError(code="MODEL_REQUIRED", message="No model selected")
            except BusinessError as exc:
                self._set_error(state, exc.message)
                raise

            persona = self._personas.get(conv.persona_id) if conv.persona_id else None
            turns = build_context_window(
                conv.messages,
                persona,
                conv.summary,
                text,
                policy=self.policy,
                system_prompt=self.system_prompt,
            )

            is_first = not any(m.role == "user" for m in conv.messages)
            conv.messages.append(
                Message(id=new_message_id(), role="user", content=text, created_at=utcnow())
            )
            if is_first:
                conv.title = derive_title(text)
            conv.updated_at = utcnow()
            self.synchronizer.notify_mutation(state)

            handle = await self.controller.start(state, turns, provider, model)

        self._notify_conversations()
        return handle

    def cancel_active_generation(self, conversation_id: str) -> bool:
        """请求停止当前生成，返回是否确有生成被取消。"""

        handle = self.controller.active_handle(conversation_id)
        if handle is None:
            return False
        self.controller.cancel(handle)
        return True

    # ---- 订阅 ----

    def subscribe_snapshots(
        self,
        listener: SnapshotListener,
        message_id: Optional[str] = None,
    ) -> Callable[[], None]:
        """订阅增量快照；指定 message_id 时只接收该消息的快照。"""

        entry = (message_id, listener)
        self._snapshot_listeners.append(entry)
        return lambda: self._remove(self._snapshot_listeners, entry)

    def subscribe_conversations(self, listener: ConversationListener) -> Callable[[], None]:
        self._conversation_listeners.append(listener)
        return lambda: self._remove(self._conversation_listeners, listener)

    def subscribe_errors(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return lambda: self._remove(self._error_listeners, listener)

    # ---- 搜索 / Provider / 导入导出 ----

    async def search_messages(self, query: str) -> List[SearchHit]:
        """先返回内存中尚未持久化的匹配，再合并存储中的结果。"""

        needle = query.strip().lower()
        if not needle:
            return []
        hits: List[SearchHit] = []
        for state in self._states.values():
            conv = state.conversation
            for message in conv.messages:
                unsaved = message.id not in state.snapshot or state.snapshot.is_stale(message)
                if unsaved and needle in message.content.lower():
                    hits.append(SearchHit(conversation_id=conv.id, message=message, conversation_title=conv.title))
        seen = {h.message.id for h in hits}

        try:
            stored = await self._store.search_messages(query)
        except StorageError as exc:
            log_event(logging.WARNING, "Store search failed, using in-memory search", error=exc.message)
            stored = [
                SearchHit(conversation_id=s.conversation.id, message=m, conversation_title=s.conversation.title)
                for s in self._states.values()
                for m in s.conversation.messages
                if needle in m.content.lower()
            ]
        for hit in stored:
            if hit.message.id not in seen:
                seen.add(hit.message.id)
                hits.append(hit)
        return hits

    async def check_providers(self) -> Dict[str, bool]:
        names = list(self._providers)
        results = await asyncio.gather(*(self._providers[n].check_availability() for n in names))
        return dict(zip(names, results))

    async def list_models(self) -> List[ModelDescriptor]:
        models: List[ModelDescriptor] = []
        availability = await self.check_providers()
        for name, available in availability.items():
            if not available:
                continue
            try:
                models.extend(await self._providers[name].list_models())
            except BusinessError as exc:
                log_event(logging.WARNING, "Failed to list models", provider=name, error_code=exc.code, error=exc.message)
        return models

    async def export_conversations(self) -> Dict[str, Any]:
        for state in self._states.values():
            if not state.is_generating:
                self.synchronizer.cancel(state)
                await self.synchronizer.flush(state)
        return await self._store.export_conversations()

    async def import_conversations(self, data: Dict[str, Any]) -> int:
        imported = await self._store.import_conversations(data)
        for conv in await self._store.list_conversations():
            if conv.id not in self._states:
                state = ConversationState(conversation=conv)
                self.synchronizer.prime(state)
                self._states[conv.id] = state
        self._notify_conversations()
        log_event(logging.INFO, "Imported conversations", imported=imported)
        return imported

    # ---- 内部实现 ----

    def _state(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        return state

    def _persona(self, persona_id: str) -> Persona:
        persona = self._personas.get(persona_id)
        if persona is None:
            raise RequestError(code="UNKNOWN_PERSONA", message=f"Unknown persona: {persona_id}")
        return persona

    def _provider_for(self, conv: Conversation) -> ProviderAdapter:
        name = (conv.provider or self.default_provider).lower()
        provider = self._providers.get(name)
        if provider is None:
            raise RequestError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {name}")
        return provider

    async def _persist_binding(self, state: ConversationState, partial: Dict[str, Any]) -> None:
        try:
            await self._store.update_conversation(state.conversation_id, partial)
        except StorageError as exc:
            log_event(
                logging.WARNING,
                "Binding not persisted",
                conversation_id=state.conversation_id,
                error=exc.message,
            )
            self.synchronizer.notify_mutation(state)
        self._notify_conversations()

    def _on_generation_finished(self, state: ConversationState, handle: GenerationHandle) -> None:
        if self._closed:
            return
        if handle.state is GenerationState.COMPLETED and handle.content.strip():
            provider = self._providers.get(handle.provider)
            sequence = handle.sequence
            cid = handle.conversation_id
            if provider is not None:
                self.summarizer.schedule(
                    cid,
                    handle.turns,
                    handle.content,
                    provider,
                    handle.model,
                    is_current=lambda: (
                        not self._closed
                        and self._states.get(cid) is state
                        and state.generation_counter == sequence
                    ),
                )
        if handle.state is GenerationState.FAILED:
            self._notify_error(state)
        self.synchronizer.notify_mutation(state)

    def _apply_summary(self, conversation_id: str, summary: str) -> None:
        state = self._states.get(conversation_id)
        if state is None:
            return
        state.conversation.summary = summary
        self.synchronizer.notify_mutation(state)

    def _set_error(self, state: ConversationState, message: Optional[str]) -> None:
        if state.error == message:
            return
        state.error = message
        self._notify_error(state)

    def _notify_error(self, state: ConversationState) -> None:
        for listener in list(self._error_listeners):
            self._call_listener(listener, state.conversation_id, state.error)

    def _notify_conversations(self) -> None:
        if not self._conversation_listeners:
            return
        conversations = self.list_conversations()
        for listener in list(self._conversation_listeners):
            self._call_listener(listener, conversations)

    def _dispatch_snapshot(self, event: SnapshotEvent) -> None:
        for message_id, listener in list(self._snapshot_listeners):
            if message_id is None or message_id == event.message_id:
                self._call_listener(listener, event)

    @staticmethod
    def _call_listener(listener: Callable[..., None], *args: Any) -> None:
        try:
            listener(*args)
        except Exception:
            log_event(logging.ERROR, "Listener raised", listener=repr(listener), exc_info=True)

    @staticmethod
    def _remove(listeners: List[Any], entry: Any) -> None:
        if entry in listeners:
            listeners.remove(entry)
