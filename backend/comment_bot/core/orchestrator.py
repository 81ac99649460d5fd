"""
Conversation Orchestrator - Maps inbound events onto session transitions.

Commands, free text and button actions are routed by the user's current
SessionState; the chat manager, feedback aggregator and generation client do
the work. Events of one user are handled strictly one at a time, in arrival
order; different users proceed in parallel.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..config.settings import Settings
from ..generation.base import GenerationClient
from ..generation.prompts import (
    PERSONALITIES,
    build_generation_prompt,
    build_improvement_prompt,
    get_personality,
)
from ..generation.retry import generate_with_retry
from ..models.chat import Chat, ChatRef
from ..models.events import Button, EventKind, InboundEvent, Reply
from ..models.session import (
    CANDIDATE_STATES,
    AwaitingChatName,
    AwaitingChatSelection,
    AwaitingDeleteTarget,
    AwaitingGenerationText,
    AwaitingImprovementText,
    AwaitingModelName,
    AwaitingRatingTarget,
    AwaitingRenameTarget,
    AwaitingRenameValue,
    GenerationContext,
    IdleState,
    SessionState,
)
from ..models.user import User
from .chat_manager import ChatManager
from .errors import InfrastructureError
from .feedback_aggregator import FeedbackAggregator
from .logging_config import UserLoggerAdapter, truncate_large_data
from .session_store import SessionStateStore

logger = logging.getLogger(__name__)

GENERIC_ERROR = InfrastructureError.GENERIC_MESSAGE
STALE_CONTEXT = "No generated comments found. Send a text to generate new ones."
INVALID_INDEX = "Invalid chat number. Try again."


class UserLockRegistry:
    """One asyncio.Lock per user; a lock is dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class BotContext:
    """Everything the orchestrator needs, built once at startup."""
    settings: Settings
    chat_manager: ChatManager
    feedback: FeedbackAggregator
    generation: GenerationClient
    sessions: SessionStateStore = field(default_factory=SessionStateStore)
    locks: UserLockRegistry = field(default_factory=UserLockRegistry)


def _personality_keyboard() -> List[List[Button]]:
    buttons = [Button(label=p.name, action=f"personality:{p.key}") for p in PERSONALITIES.values()]
    return [buttons[i:i + 2] for i in range(0, len(buttons), 2)]


def _rating_keyboard() -> List[List[Button]]:
    return [
        [Button(label="⭐" * n, action=f"rate:{n}") for n in range(1, 4)],
        [Button(label="⭐" * n, action=f"rate:{n}") for n in range(4, 6)],
        [Button(label="Improve", action="improve")],
    ]


def _numbered(chats: List[ChatRef]) -> str:
    lines = []
    for index, chat in enumerate(chats, 1):
        marker = " ✅" if chat.is_active else ""
        lines.append(f"{index}. {chat.name}{marker}")
    return "\n".join(lines)


def _parse_index(text: str, size: int) -> Optional[int]:
    """1-based user input to 0-based index, or None when invalid."""
    try:
        index = int(text.strip()) - 1
    except (TypeError, ValueError):
        return None
    return index if 0 <= index < size else None


class ConversationOrchestrator:
    """Entry point for every user event."""

    def __init__(self, context: BotContext):
        self.ctx = context
        self._commands = {
            "start": self._cmd_start,
            "help": self._cmd_help,
            "generate": self._cmd_generate,
            "status": self._cmd_status,
            "learning": self._cmd_learning,
            "models": self._cmd_models,
            "setmodel": self._cmd_setmodel,
            "chats": self._cmd_chats,
            "newchat": self._cmd_newchat,
            "selectchat": self._cmd_selectchat,
            "renamechat": self._cmd_renamechat,
            "deletechat": self._cmd_deletechat,
            "clear": self._cmd_clear,
        }

    @property
    def sessions(self) -> SessionStateStore:
        return self.ctx.sessions

    async def handle(self, event: InboundEvent) -> List[Reply]:
        """
        Process one event and return the replies to send.

        Never raises: unexpected errors are logged, the user's state is
        cleared and a generic message is returned.
        """
        async with self.ctx.locks.hold(event.external_user_id):
            user: Optional[User] = None
            try:
                user_result = await self.ctx.chat_manager.get_or_create_user(
                    event.external_user_id, event.profile
                )
                if not user_result.success:
                    return [Reply(text=user_result.error)]
                user = user_result.data
                return await self._dispatch(user, event)
            except Exception as e:
                logger.exception(
                    f"Unhandled error while processing event: {e}",
                    extra={"extra_fields": {
                        "external_user_id": event.external_user_id,
                        "kind": event.kind.value,
                    }},
                )
                if user is not None:
                    self.sessions.clear(user.id)
                return [Reply(text=GENERIC_ERROR)]

    async def _dispatch(self, user: User, event: InboundEvent) -> List[Reply]:
        if event.kind == EventKind.COMMAND:
            handler = self._commands.get((event.command or "").lower())
            if handler is None:
                return [Reply(text="Unknown command. Use /help to see what I can do.")]
            # a command always abandons the pending interaction
            self.sessions.clear(user.id)
            return await handler(user, event)

        if event.kind == EventKind.ACTION:
            return await self._handle_action(user, event.action or "")

        return await self._handle_text(user, event.text or "")

    # ---- free text ----

    async def _handle_text(self, user: User, text: str) -> List[Reply]:
        state = self.sessions.get(user.id)

        if isinstance(state, IdleState):
            return await self._generate(user, text, personality=None)
        if isinstance(state, AwaitingGenerationText):
            return await self._generate(user, text, personality=state.personality)
        if isinstance(state, AwaitingRatingTarget):
            # a new text replaces the pending generation, same voice
            return await self._generate(user, text, personality=state.context.personality)
        if isinstance(state, AwaitingModelName):
            return await self._on_model_name(user, text)
        if isinstance(state, AwaitingChatName):
            return await self._on_chat_name(user, text)
        if isinstance(state, CANDIDATE_STATES):
            return await self._on_candidate_index(user, state, text)
        if isinstance(state, AwaitingRenameValue):
            return await self._on_rename_value(user, state, text)
        if isinstance(state, AwaitingImprovementText):
            return await self._on_improvement_text(user, state, text)

        logger.warning(
            "Unexpected session state, resetting",
            extra={"extra_fields": {"user_id": user.id, "state": type(state).__name__}},
        )
        self.sessions.clear(user.id)
        return [Reply(text="Something got mixed up. Let's start again: use /help.")]

    async def _on_model_name(self, user: User, text: str) -> List[Reply]:
        result = await self.ctx.chat_manager.set_user_model(user.id, text)
        self.sessions.clear(user.id)
        if result.success:
            return [Reply(text=f"✅ Model changed to {result.data}")]
        return [Reply(text=f"❌ Could not change the model:\n\n{result.error}")]

    async def _on_chat_name(self, user: User, text: str) -> List[Reply]:
        result = await self.ctx.chat_manager.create_chat(user.id, text)
        self.sessions.clear(user.id)
        if result.success:
            return [Reply(text=f"✅ Chat \"{result.data.name}\" created and selected.")]
        return [Reply(text=f"❌ Could not create the chat:\n\n{result.error}")]

    async def _on_candidate_index(self, user: User, state: SessionState, text: str) -> List[Reply]:
        index = _parse_index(text, len(state.candidates))
        if index is None:
            # keep the state so the user can retry
            return [Reply(text=INVALID_INDEX)]
        chosen = state.candidates[index]
        manager = self.ctx.chat_manager

        if isinstance(state, AwaitingRenameTarget):
            self.sessions.set(user.id, AwaitingRenameValue(chat_id=chosen.id, old_name=chosen.name))
            return [Reply(
                text=f"✏️ Send a new name for \"{chosen.name}\" "
                     f"(maximum {manager.limits.max_name_length} characters)."
            )]

        self.sessions.clear(user.id)
        if isinstance(state, AwaitingChatSelection):
            result = await manager.select_chat(user.id, chosen.id)
            if result.success:
                return [Reply(text=f"✅ Chat \"{result.data.name}\" selected.")]
            return [Reply(text=f"❌ Could not select the chat:\n\n{result.error}")]

        result = await manager.delete_chat(user.id, chosen.id)
        if not result.success:
            return [Reply(text=f"❌ Could not delete the chat:\n\n{result.error}")]
        text = f"✅ Chat \"{result.data.deleted.name}\" deleted."
        if result.data.promoted is not None:
            text += f"\nActive chat is now \"{result.data.promoted.name}\"."
        return [Reply(text=text)]

    async def _on_rename_value(self, user: User, state: AwaitingRenameValue, text: str) -> List[Reply]:
        result = await self.ctx.chat_manager.rename_chat(user.id, state.chat_id, text)
        self.sessions.clear(user.id)
        if result.success:
            return [Reply(text=f"✅ Chat renamed from \"{state.old_name}\" to \"{result.data.name}\".")]
        return [Reply(text=f"❌ Could not rename the chat:\n\n{result.error}")]

    # ---- generation ----

    async def _generate(self, user: User, text: str, personality: Optional[str]) -> List[Reply]:
        log = UserLoggerAdapter(logger, {"user_id": user.id})
        if not text or not text.strip():
            return [Reply(text="Send the text of a post to comment on.")]

        manager = self.ctx.chat_manager
        settings = self.ctx.settings

        chat_result = await manager.ensure_active_chat(user.id)
        if not chat_result.success:
            self.sessions.clear(user.id)
            return [Reply(text=f"❌ {chat_result.error}\n\nUse /newchat to create a chat.")]
        chat: Chat = chat_result.data

        model_result = await manager.get_user_model(user.id)
        model = model_result.data if model_result.success else settings.default_model

        profile = get_personality(personality)
        prompt = build_generation_prompt(text, profile)
        log.info(
            "Generating comments",
            extra={"extra_fields": {
                "chat_id": chat.id,
                "model": model,
                "personality": personality,
                "text": truncate_large_data(text, 100),
            }},
        )
        result = await generate_with_retry(
            self.ctx.generation,
            prompt,
            model,
            session_token=str(chat.id),
            max_retries=settings.generation_max_retries,
            base_delay=settings.generation_retry_base_delay,
        )
        if not result.success:
            self.sessions.clear(user.id)
            return [Reply(
                text=f"❌ Could not generate comments: {result.error}\n\n"
                     f"Check the API with /status and try again."
            )]

        generated = result.data
        await manager.record_message(
            user.id, chat.id, data={"model": model, "personality": personality}
        )
        context = GenerationContext(
            original_text=text.strip(),
            personality=personality,
            model=model,
            chat_id=chat.id,
            generated_text=generated.text,
            session_token=generated.session_token,
        )
        self.sessions.set(user.id, AwaitingRatingTarget(context=context))

        shown = truncate_large_data(context.original_text, 300)
        header = f"📝 Original text:\n\"{shown}\""
        if profile:
            header += f"\n👤 Voice: {profile.name}"
        comments = context.comments
        buttons = []
        if comments:
            buttons.append([
                Button(label=str(i), action=f"select:{i}") for i in range(1, len(comments) + 1)
            ])
        buttons.append([Button(label="Improve", action="improve")])
        return [Reply(
            text=f"{header}\n\n💬 Comments:\n\n{generated.text}\n\n"
                 f"Pick a comment to rate it, or ask for improvements.",
            buttons=buttons,
        )]

    async def _on_improvement_text(
        self, user: User, state: AwaitingImprovementText, text: str
    ) -> List[Reply]:
        if not text or not text.strip():
            return [Reply(text="Describe what should change in the comments.")]

        context = state.context
        settings = self.ctx.settings
        profile = get_personality(context.personality)

        improved: List[str] = []
        for comment in context.comments:
            prompt = build_improvement_prompt(context.original_text, comment, text.strip(), profile)
            result = await generate_with_retry(
                self.ctx.generation,
                prompt,
                context.model,
                session_token=context.session_token,
                max_retries=1,
                base_delay=settings.generation_retry_base_delay,
            )
            # a failed variant keeps its original wording
            improved.append(result.data.text.strip() if result.success else comment)

        saved = await self.ctx.feedback.record_improvement(user.id, context, text)
        if not saved.success:
            logger.warning(
                f"Improvement feedback not saved: {saved.error}",
                extra={"extra_fields": {"user_id": user.id, "event_id": context.event_id}},
            )
        await self.ctx.chat_manager.record_message(
            user.id, context.chat_id, action="improve", data={"event_id": context.event_id}
        )
        self.sessions.clear(user.id)
        improved_text = "\n\n".join(improved)
        return [Reply(text=f"🔧 Improved comments\n\nYour request:\n{text.strip()}\n\n{improved_text}")]

    # ---- button actions ----

    async def _handle_action(self, user: User, action: str) -> List[Reply]:
        name, _, arg = action.partition(":")
        state = self.sessions.get(user.id)

        if name == "personality":
            profile = get_personality(arg)
            if profile is None:
                return [Reply(text="Unknown personality. Use /generate to pick again.")]
            self.sessions.set(user.id, AwaitingGenerationText(personality=profile.key))
            return [Reply(
                text=f"✅ Voice selected: {profile.name}\n{profile.description}\n"
                     f"Style: {profile.style}\n\nNow send the text of the post."
            )]

        if name not in ("select", "rate", "improve"):
            return [Reply(text="This button is no longer active.")]
        if not isinstance(state, AwaitingRatingTarget):
            return [Reply(text=STALE_CONTEXT)]

        if name == "select":
            comments = state.context.comments
            index = _parse_index(arg, len(comments))
            if index is None:
                return [Reply(text="Comment not found.")]
            self.sessions.set(user.id, state.model_copy(update={"selected_index": index}))
            return [Reply(
                text=f"💬 Selected comment:\n\n{comments[index]}\n\n"
                     f"Rate it from 1 to 5 or ask for improvements.",
                buttons=_rating_keyboard(),
            )]

        if name == "improve":
            self.sessions.set(user.id, AwaitingImprovementText(context=state.context))
            return [Reply(
                text="🔧 What should be improved? For example:\n"
                     "• \"Make it shorter\"\n"
                     "• \"Add more facts\"\n"
                     "• \"Use a more formal tone\"\n\n"
                     "Send your wishes:"
            )]

        try:
            rating = int(arg)
        except ValueError:
            return [Reply(text="Invalid rating.")]
        result = await self.ctx.feedback.record_rating(
            user.id, state.context, rating, selected_index=state.selected_index
        )
        if not result.success:
            return [Reply(text=f"❌ Could not save the rating: {result.error}")]
        self.sessions.clear(user.id)
        return [Reply(text=f"✅ Thanks for the rating: {'⭐' * rating}")]

    # ---- commands ----

    async def _cmd_start(self, user: User, event: InboundEvent) -> List[Reply]:
        chats = await self.ctx.chat_manager.list_chats(user.id)
        if chats.success and not chats.data:
            await self.ctx.chat_manager.create_chat(user.id, self.ctx.chat_manager.default_chat_name)
        return [Reply(
            text=f"👋 Hi {user.display_name}! I write comments for social media posts.\n\n"
                 "1. Use /generate and pick a voice\n"
                 "2. Send the text of a post\n"
                 "3. Get 4 comment variants, rate them or ask for improvements\n\n"
                 "You can also just send a text right away. See /help for all commands."
        )]

    async def _cmd_help(self, user: User, event: InboundEvent) -> List[Reply]:
        limits = self.ctx.chat_manager.limits
        voices = "\n".join(f"• {p.name} - {p.description}" for p in PERSONALITIES.values())
        return [Reply(
            text="📚 Commands\n\n"
                 "/start - start the bot\n"
                 "/generate - pick a voice and generate comments\n"
                 "/status - check the generation API\n"
                 "/learning - feedback statistics\n"
                 "/models - list available models\n"
                 "/setmodel - choose a model\n"
                 "/chats - list your chats\n"
                 "/newchat - create a chat\n"
                 "/selectchat - switch the active chat\n"
                 "/renamechat - rename a chat\n"
                 "/deletechat - delete a chat\n"
                 "/clear - clear the active chat history\n\n"
                 f"Voices:\n{voices}\n\n"
                 f"Limits: up to {limits.max_chats} chats, "
                 f"chat names up to {limits.max_name_length} characters."
        )]

    async def _cmd_generate(self, user: User, event: InboundEvent) -> List[Reply]:
        return [Reply(
            text="👤 Pick a voice for the comments, then send the text of the post.",
            buttons=_personality_keyboard(),
        )]

    async def _cmd_status(self, user: User, event: InboundEvent) -> List[Reply]:
        backend = self.ctx.chat_manager.backend
        storage_line = f"💾 Storage: {backend.name}" + (" (degraded)" if backend.degraded else "")
        try:
            status = await self.ctx.generation.check_status()
        except Exception as e:
            logger.warning(f"Generation API status check failed: {e}")
            return [Reply(
                text=f"❌ Generation API is not reachable\n"
                     f"🔗 {self.ctx.settings.generation_api_url}\n{storage_line}"
            )]
        return [Reply(
            text=f"✅ Generation API is up\n"
                 f"📊 Status: {status.get('status', 'OK')}\n"
                 f"🔗 {self.ctx.settings.generation_api_url}\n{storage_line}"
        )]

    async def _cmd_learning(self, user: User, event: InboundEvent) -> List[Reply]:
        mine = await self.ctx.feedback.get_user_stats(user.id)
        overall = await self.ctx.feedback.get_global_stats()
        if not mine.success or not overall.success:
            return [Reply(text=f"❌ Could not load statistics: {(mine if not mine.success else overall).error}")]
        stats, totals = mine.data, overall.data
        buckets = "\n".join(f"• {'⭐' * n} ({n}): {stats.ratings[n]}" for n in range(1, 6))
        return [Reply(
            text="📊 Feedback statistics\n\n"
                 f"Your ratings: {stats.rating_count}\n"
                 f"Average rating: {stats.average_rating_text}\n"
                 f"Improvement requests: {stats.improvement_count}\n\n"
                 f"{buckets}\n\n"
                 f"All users: {totals.total_feedback} feedback records, "
                 f"{totals.rating_count} ratings, {totals.improvement_count} improvement requests."
        )]

    async def _cmd_models(self, user: User, event: InboundEvent) -> List[Reply]:
        current = (await self.ctx.chat_manager.get_user_model(user.id)).data or self.ctx.settings.default_model
        try:
            models = await self.ctx.generation.list_models()
        except Exception as e:
            logger.warning(f"Model list unavailable: {e}")
            return [Reply(text="❌ Could not load the model list. Check /status.")]
        lines = [f"{i}. {m}{' ✅' if m == current else ''}" for i, m in enumerate(models, 1)]
        return [Reply(
            text="🤖 Available models\n\n" + "\n".join(lines)
                 + f"\n\nCurrent model: {current}\nUse /setmodel to change it."
        )]

    async def _cmd_setmodel(self, user: User, event: InboundEvent) -> List[Reply]:
        self.sessions.set(user.id, AwaitingModelName())
        return [Reply(text="🤖 Send the name of the model to use, e.g. qwen-max-latest. See /models.")]

    async def _cmd_chats(self, user: User, event: InboundEvent) -> List[Reply]:
        result = await self.ctx.chat_manager.list_chats(user.id)
        if not result.success:
            return [Reply(text=f"❌ {result.error}")]
        if not result.data:
            return [Reply(text="💬 You have no chats yet. Use /newchat to create one.")]
        lines = []
        for index, chat in enumerate(result.data, 1):
            marker = " ✅" if chat.is_active else ""
            lines.append(
                f"{index}. {chat.name}{marker}\n"
                f"   📅 {chat.created_at:%Y-%m-%d} | 💬 {chat.message_count} messages"
            )
        return [Reply(text="💬 Your chats\n\n" + "\n".join(lines) + "\n\nUse /selectchat to switch.")]

    async def _cmd_newchat(self, user: User, event: InboundEvent) -> List[Reply]:
        self.sessions.set(user.id, AwaitingChatName())
        limit = self.ctx.chat_manager.limits.max_name_length
        return [Reply(text=f"💬 Send a name for the new chat (maximum {limit} characters).")]

    async def _start_candidate_flow(self, user: User, state_cls, prompt: str) -> List[Reply]:
        result = await self.ctx.chat_manager.list_chats(user.id)
        if not result.success:
            return [Reply(text=f"❌ {result.error}")]
        if not result.data:
            return [Reply(text="💬 You have no chats yet. Use /newchat to create one.")]
        candidates = [ChatRef.from_chat(chat) for chat in result.data]
        self.sessions.set(user.id, state_cls(candidates=candidates))
        return [Reply(text=f"{prompt}\n\n{_numbered(candidates)}\n\nSend the chat number.")]

    async def _cmd_selectchat(self, user: User, event: InboundEvent) -> List[Reply]:
        return await self._start_candidate_flow(user, AwaitingChatSelection, "Which chat should be active?")

    async def _cmd_renamechat(self, user: User, event: InboundEvent) -> List[Reply]:
        return await self._start_candidate_flow(user, AwaitingRenameTarget, "Which chat do you want to rename?")

    async def _cmd_deletechat(self, user: User, event: InboundEvent) -> List[Reply]:
        return await self._start_candidate_flow(user, AwaitingDeleteTarget, "Which chat do you want to delete?")

    async def _cmd_clear(self, user: User, event: InboundEvent) -> List[Reply]:
        active = await self.ctx.chat_manager.get_active_chat(user.id)
        if not active.success:
            return [Reply(text="❌ No active chat. Use /selectchat to pick one.")]
        try:
            await self.ctx.generation.clear_history(str(active.data.id))
        except Exception as e:
            logger.warning(f"Clearing upstream history failed: {e}")
            return [Reply(text="❌ Could not clear the chat history. Try again later.")]
        return [Reply(text=f"✅ History of \"{active.data.name}\" cleared.")]
