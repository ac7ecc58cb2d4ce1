"""对外 API 服务模块。

提供简化的异步函数接口供上层应用（CLI、Web 后端、测试脚本）调用。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.engine.chat_engine import ChatEngine
from chat_core.engine.generation import GenerationState
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.providers import create_providers


_store: Optional[ConversationStore] = None
_engine: Optional[ChatEngine] = None


async def get_default_engine() -> ChatEngine:
    """获取默认的 ChatEngine 实例（单例，首次调用时完成 bootstrap）。"""
    global _store, _engine
    if _store is None:
        _store = JsonConversationStore(root=settings.storage_root)
    if _engine is None or _engine.closed:
        _engine = ChatEngine(store=_store, providers=create_providers())
        await _engine.bootstrap()
    return _engine


async def run_chat(text: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
    """发送一条消息并等待完整回复。

    Args:
        text: 用户输入内容
        conversation_id: 会话ID（可选，不提供则使用当前会话）

    Returns:
        包含会话ID、助手消息、生成终态和错误信息的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        engine = await get_default_engine()
        cid = conversation_id or engine.active_conversation_id
        if cid is None:
            cid = (await engine.new_conversation()).id
        else:
            await engine.open_conversation(cid)
        handle = await engine.send_turn(cid, text)
        outcome = await handle.wait()
        conv = engine.conversation(cid)
        message = conv.find_message(handle.message_id)
        return {
            "conversation_id": cid,
            "assistant_message": {
                "id": handle.message_id,
                "content": message.content if message is not None else handle.content,
                "created_at": message.created_at.isoformat() if message is not None else None,
            },
            "state": outcome.value,
            "error": engine.error_for(cid) if outcome is GenerationState.FAILED else None,
        }
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise


async def list_conversations() -> List[Dict[str, Any]]:
    """列出所有会话，按最近更新时间倒序。"""
    engine = await get_default_engine()
    return [
        {
            "id": c.id,
            "title": c.title,
            "persona_id": c.persona_id,
            "provider": c.provider,
            "model": c.model,
            "created_at": c.created_at.isoformat(),
            "updated_at": c.updated_at.isoformat(),
            "message_count": len(c.messages),
        }
        for c in engine.list_conversations()
    ]


async def shutdown() -> None:
    """关闭默认引擎，写回未保存的变更。"""
    global _engine
    if _engine is not None:
        await _engine.aclose()
        _engine = None
