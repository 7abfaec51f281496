"""
Conversation State Module

Defines the branching conversation history shared by both personas: a
forest of ConversationBranch timelines rooted at "main", each holding an
ordered list of Messages. BranchStore is the only shared mutable state in
a session and is reached exclusively through its operations.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime
import logging
import uuid

from events import EventBus, ProtocolEvent

logger = logging.getLogger(__name__)

MAIN_BRANCH_ID = "main"
MAIN_BRANCH_NAME = "Main Conversation"
USER_AUTHOR = "User"
SYSTEM_AUTHOR = "System"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Message:
    """
    A single transcript entry.

    Messages are frozen; the store swaps in updated copies by id, so a
    forked branch never shares mutable state with its parent.
    """
    id: str
    author: str
    text: str
    is_internal_monologue: bool = False
    is_loading: bool = False
    image_base64: Optional[str] = None
    sentiment: Optional[float] = None
    influence_score: Optional[float] = None
    vote: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_visible_turn(self) -> bool:
        """True for finalized, non-monologue, non-System messages."""
        return (
            not self.is_internal_monologue
            and not self.is_loading
            and self.author != SYSTEM_AUTHOR
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary format."""
        return {
            "id": self.id,
            "author": self.author,
            "text": self.text,
            "is_internal_monologue": self.is_internal_monologue,
            "is_loading": self.is_loading,
            "image_base64": self.image_base64,
            "sentiment": self.sentiment,
            "influence_score": self.influence_score,
            "vote": self.vote,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        values = dict(data)
        if isinstance(values.get("timestamp"), str):
            values["timestamp"] = datetime.fromisoformat(values["timestamp"])
        return cls(**values)


@dataclass
class ConversationBranch:
    """An independently mutable conversation timeline."""
    id: str
    name: str
    messages: List[Message] = field(default_factory=list)
    parent_id: Optional[str] = None
    parent_branch_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def to_dict(self) -> Dict[str, Any]:
        """Convert branch to dictionary format."""
        return {
            "id": self.id,
            "name": self.name,
            "messages": [m.to_dict() for m in self.messages],
            "parent_id": self.parent_id,
            "parent_branch_id": self.parent_branch_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationBranch":
        return cls(
            id=data["id"],
            name=data["name"],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            parent_id=data.get("parent_id"),
            parent_branch_id=data.get("parent_branch_id"),
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at") else datetime.now(),
        )


@dataclass
class ConversationMetrics:
    """Derived metrics computed from one branch."""
    total_messages: int = 0
    reply_count: int = 0
    monologue_count: int = 0
    system_count: int = 0
    user_count: int = 0
    replies_by_author: Dict[str, int] = field(default_factory=dict)
    average_sentiment: Dict[str, float] = field(default_factory=dict)
    total_influence: Dict[str, float] = field(default_factory=dict)
    upvotes: int = 0
    downvotes: int = 0
    conversation_duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary format."""
        return {
            "total_messages": self.total_messages,
            "reply_count": self.reply_count,
            "monologue_count": self.monologue_count,
            "system_count": self.system_count,
            "user_count": self.user_count,
            "replies_by_author": dict(self.replies_by_author),
            "average_sentiment": dict(self.average_sentiment),
            "total_influence": dict(self.total_influence),
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "conversation_duration_seconds": self.conversation_duration_seconds,
        }


class BranchStore:
    """
    Forest of conversation branches with exactly one active branch.

    Every mutation names the branch it targets and never touches any
    other branch. Fork copies the message list, so branches are fully
    independent afterwards.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        """
        Initialize the store with an empty "main" branch.

        Args:
            event_bus: Optional bus receiving message/branch events
        """
        self.event_bus = event_bus or EventBus()
        self._branches: Dict[str, ConversationBranch] = {}
        self._active_branch_id = MAIN_BRANCH_ID
        self.reset()

    def reset(self) -> None:
        """Drop every branch and start over with an empty "main"."""
        self._branches = {
            MAIN_BRANCH_ID: ConversationBranch(id=MAIN_BRANCH_ID, name=MAIN_BRANCH_NAME)
        }
        self._active_branch_id = MAIN_BRANCH_ID
        logger.info("Branch store reset to empty main branch")

    # ------------------------------------------------------------------ queries

    @property
    def active_branch_id(self) -> str:
        return self._active_branch_id

    @property
    def active_branch(self) -> ConversationBranch:
        return self._branches[self._active_branch_id]

    def has_branch(self, branch_id: str) -> bool:
        return branch_id in self._branches

    def get_branch(self, branch_id: str) -> ConversationBranch:
        """
        Raises:
            KeyError: If the branch does not exist
        """
        if branch_id not in self._branches:
            raise KeyError(f"Unknown branch: {branch_id}")
        return self._branches[branch_id]

    def list_branches(self) -> List[ConversationBranch]:
        return list(self._branches.values())

    def get_messages(self, branch_id: Optional[str] = None) -> List[Message]:
        """Snapshot of a branch's messages (active branch by default)."""
        branch = self.get_branch(branch_id or self._active_branch_id)
        return list(branch.messages)

    def find_message(self, message_id: str, branch_id: Optional[str] = None) -> Optional[Message]:
        branch = self.get_branch(branch_id or self._active_branch_id)
        index = branch.index_of(message_id)
        return branch.messages[index] if index >= 0 else None

    # ---------------------------------------------------------------- mutation

    def append_messages(self, branch_id: str, messages: Sequence[Message]) -> None:
        branch = self.get_branch(branch_id)
        branch.messages.extend(messages)
        for message in messages:
            self.event_bus.emit(
                ProtocolEvent.MESSAGE_ADDED,
                {"branch_id": branch_id, "message": message}
            )

    def update_message(self, branch_id: str, message_id: str, **changes) -> Optional[Message]:
        """
        Replace a message by id with an updated copy.

        Args:
            branch_id: Branch holding the message
            message_id: Target message id
            **changes: Message fields to change

        Returns:
            The updated message, or None if it is not in the branch
        """
        branch = self.get_branch(branch_id)
        index = branch.index_of(message_id)
        if index < 0:
            logger.warning(f"Message {message_id} not found in branch {branch_id}")
            return None

        updated = replace(branch.messages[index], **changes)
        branch.messages[index] = updated
        self.event_bus.emit(
            ProtocolEvent.MESSAGE_UPDATED,
            {"branch_id": branch_id, "message": updated}
        )
        return updated

    def remove_message(self, branch_id: str, message_id: str) -> bool:
        branch = self.get_branch(branch_id)
        index = branch.index_of(message_id)
        if index < 0:
            return False
        del branch.messages[index]
        self.event_bus.emit(
            ProtocolEvent.MESSAGE_REMOVED,
            {"branch_id": branch_id, "message_id": message_id}
        )
        return True

    def clear_messages(self, branch_id: str) -> None:
        self.get_branch(branch_id).messages = []
        self.event_bus.emit(ProtocolEvent.MESSAGES_CLEARED, {"branch_id": branch_id})
        logger.info(f"Cleared messages of branch {branch_id}")

    def fork(self, message_id: str) -> Optional[str]:
        """
        Create a branch from a message of the active branch.

        The new branch holds a copy of the active branch's messages up to
        and including the message. It does not become active here.

        Args:
            message_id: Fork point in the active branch

        Returns:
            New branch id, or None if the message is not in the active branch
        """
        source = self.active_branch
        index = source.index_of(message_id)
        if index < 0:
            logger.warning(f"Cannot fork: message {message_id} not in branch {source.id}")
            return None

        fork_text = source.messages[index].text
        branch = ConversationBranch(
            id=new_id(),
            name=f'Branch from "{fork_text[:20]}..."',
            messages=list(source.messages[:index + 1]),
            parent_id=message_id,
            parent_branch_id=source.id,
        )
        self._branches[branch.id] = branch

        logger.info(
            f"Forked branch {branch.id} from {source.id} at message "
            f"{index + 1}/{len(source.messages)}"
        )
        self.event_bus.emit(
            ProtocolEvent.BRANCH_CREATED,
            {"branch_id": branch.id, "parent_branch_id": source.id, "parent_id": message_id}
        )
        return branch.id

    def set_active(self, branch_id: str) -> None:
        """
        Raises:
            KeyError: If the branch does not exist
        """
        self.get_branch(branch_id)
        self._active_branch_id = branch_id

    def delete_branch(self, branch_id: str) -> bool:
        """
        Remove a branch from the forest.

        Children of the deleted branch are reparented onto its parent. The
        child's fork point becomes the earlier of its own fork message and
        the deleted branch's fork message, both of which exist in the new
        parent's history. If the deleted branch was active, "main" becomes
        active.

        Args:
            branch_id: Branch to delete

        Returns:
            True if a branch was removed
        """
        if branch_id == MAIN_BRANCH_ID or branch_id not in self._branches:
            return False

        deleted = self._branches.pop(branch_id)

        for child in self._branches.values():
            if child.parent_branch_id != branch_id:
                continue
            child_fork = deleted.index_of(child.parent_id) if child.parent_id else -1
            own_fork = deleted.index_of(deleted.parent_id) if deleted.parent_id else -1
            if child_fork >= 0 and (own_fork < 0 or child_fork < own_fork):
                child.parent_id = deleted.messages[child_fork].id
            else:
                child.parent_id = deleted.parent_id
            child.parent_branch_id = deleted.parent_branch_id or MAIN_BRANCH_ID
            logger.info(f"Reparented branch {child.id} onto {child.parent_branch_id}")

        if self._active_branch_id == branch_id:
            self._active_branch_id = MAIN_BRANCH_ID

        logger.info(f"Deleted branch {branch_id}")
        self.event_bus.emit(ProtocolEvent.BRANCH_DELETED, {"branch_id": branch_id})
        return True

    def vote(self, message_id: str, value: int) -> Optional[Message]:
        """
        Toggle a vote on a message of the active branch.

        Voting the same value twice clears the vote.

        Args:
            message_id: Target message
            value: 1 for upvote, -1 for downvote

        Returns:
            Updated message, or None if not found

        Raises:
            ValueError: If value is not 1 or -1
        """
        if value not in (1, -1):
            raise ValueError(f"Vote must be 1 or -1, got {value}")

        current = self.find_message(message_id)
        if current is None:
            return None
        new_vote = None if current.vote == value else value
        return self.update_message(self._active_branch_id, message_id, vote=new_vote)

    # --------------------------------------------------------------- derived

    def compute_metrics(self, branch_id: Optional[str] = None) -> ConversationMetrics:
        """
        Compute derived metrics for a branch.

        Args:
            branch_id: Branch to analyse (active branch by default)

        Returns:
            ConversationMetrics
        """
        messages = self.get_messages(branch_id)
        metrics = ConversationMetrics(total_messages=len(messages))
        sentiments: Dict[str, List[float]] = {}

        for m in messages:
            if m.is_loading:
                continue
            if m.vote == 1:
                metrics.upvotes += 1
            elif m.vote == -1:
                metrics.downvotes += 1

            if m.author == SYSTEM_AUTHOR:
                metrics.system_count += 1
            elif m.is_internal_monologue:
                metrics.monologue_count += 1
            elif m.author == USER_AUTHOR:
                metrics.user_count += 1
            else:
                metrics.reply_count += 1
                metrics.replies_by_author[m.author] = (
                    metrics.replies_by_author.get(m.author, 0) + 1
                )
                if m.sentiment is not None:
                    sentiments.setdefault(m.author, []).append(m.sentiment)
                if m.influence_score is not None:
                    metrics.total_influence[m.author] = (
                        metrics.total_influence.get(m.author, 0.0) + m.influence_score
                    )

        metrics.average_sentiment = {
            author: sum(values) / len(values)
            for author, values in sentiments.items()
        }

        if len(messages) > 1:
            duration = messages[-1].timestamp - messages[0].timestamp
            metrics.conversation_duration_seconds = duration.total_seconds()

        return metrics

    def to_dict(self) -> Dict[str, Any]:
        """Export the whole forest to a dictionary."""
        return {
            "active_branch_id": self._active_branch_id,
            "branches": [b.to_dict() for b in self._branches.values()],
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        """
        Replace the forest with one exported by to_dict().

        Raises:
            ValueError: If the data has no "main" branch
        """
        branches = {
            b["id"]: ConversationBranch.from_dict(b)
            for b in data.get("branches", [])
        }
        if MAIN_BRANCH_ID not in branches:
            raise ValueError("Saved conversation has no main branch")

        self._branches = branches
        active = data.get("active_branch_id", MAIN_BRANCH_ID)
        self._active_branch_id = active if active in branches else MAIN_BRANCH_ID
        logger.info(f"Loaded {len(branches)} branches")
