# /agentflow/services/agent_resolver.py

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

import structlog

from agentflow.models.conversation import AgentAssignment, Conversation
from agentflow.models.domain import Agent, Broadcast, USABLE_AGENT_STATUSES
from agentflow.services.event_tracker import EventType
from agentflow.utils.metrics import agent_resolution_counter, agent_substitution_counter

# Decides which agent (flow graph) owns a conversation.
#   regular:   keyword scan over the business's usable agents, else the first usable one
#   broadcast: exact -> partial -> first-key fallback over the broadcast's agent_mapping,
#              then mapping default -> system-wide substitution if the agent is unusable
# Once bound, a conversation keeps its agent for as long as that agent stays usable.

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)


class MatchKind(str, Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    FALLBACK = "fallback"
    KEYWORD = "keyword"
    FIRST_USABLE = "first_usable"
    EXISTING = "existing"


class Substitution(str, Enum):
    MAPPING_DEFAULT = "mapping_default"
    SYSTEM_WIDE = "system_wide"


class ResolverCode(str, Enum):
    NO_BROADCAST_ID = "NO_BROADCAST_ID"
    BROADCAST_NOT_FOUND = "BROADCAST_NOT_FOUND"
    NO_AGENT_MAPPING = "NO_AGENT_MAPPING"
    AGENT_NOT_IN_MAPPING = "AGENT_NOT_IN_MAPPING"
    AGENT_INACTIVE_OR_NOT_FOUND = "AGENT_INACTIVE_OR_NOT_FOUND"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    NO_ACTIVE_AGENTS_SYSTEM_WIDE = "NO_ACTIVE_AGENTS_SYSTEM_WIDE"
    NO_SUITABLE_AGENT = "NO_SUITABLE_AGENT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ResolutionResult(TypedDict, total=False):
    success: bool
    agent: Optional[Agent]
    match_kind: Optional[MatchKind]
    keyword: Optional[str]
    substitution: Optional[Substitution]
    broadcast: Optional[Broadcast]
    conversation: Optional[Conversation]
    newly_assigned: bool
    code: Optional[ResolverCode]
    error: Optional[str]
    details: Dict[str, Any]


def _failure(code: ResolverCode, error: str, **details: Any) -> ResolutionResult:
    return {"success": False, "agent": None, "code": code, "error": error, "details": details}


def _status_counts(agents: List[Agent]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for agent in agents:
        counts[agent.status] = counts.get(agent.status, 0) + 1
    return counts


def match_mapping_keyword(agent_mapping: Dict[str, str], text: Optional[str]) -> tuple:
    """
    Pick a mapping keyword for the user's text.

    Returns (keyword, agent_id, MatchKind). Exact beats partial; partial is the
    first key (in mapping order) that contains the text or is contained by it;
    otherwise the first key. Empty text never partially matches.
    """
    normalized = (text or "").strip().lower()
    for keyword, agent_id in agent_mapping.items():
        if normalized and normalized == keyword.lower():
            return keyword, agent_id, MatchKind.EXACT
    if normalized:
        for keyword, agent_id in agent_mapping.items():
            key = keyword.lower()
            if key in normalized or normalized in key:
                return keyword, agent_id, MatchKind.PARTIAL
    first = next(iter(agent_mapping))
    return first, agent_mapping[first], MatchKind.FALLBACK


class AgentResolver:
    def __init__(self, repository, tracker=None, alerting=None):
        self.repository = repository
        self.tracker = tracker
        self.alerting = alerting

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    async def resolve(self, conversation: Conversation, business_id: Optional[str], text: Optional[str]) -> ResolutionResult:
        """
        Resolve the agent for a conversation, reusing the bound one when it is
        still usable and persisting a new binding otherwise.
        """
        try:
            return await self.find_or_assign_with_persistence(conversation, business_id, text)
        except Exception as e:
            logger.error(f"Agent resolution failed for conversation {conversation.id}: {e}", exc_info=True)
            return _failure(ResolverCode.INTERNAL_ERROR, "Internal error in agent resolution", original_error=str(e))

    async def find_or_assign_with_persistence(
        self, conversation: Conversation, business_id: Optional[str], text: Optional[str]
    ) -> ResolutionResult:
        if conversation.agent_id:
            existing = await self.repository.get_agent(conversation.agent_id)
            if existing and existing.is_usable:
                agent_resolution_counter.labels(mode=self._mode(conversation), match_kind=MatchKind.EXISTING.value).inc()
                return {
                    "success": True,
                    "agent": existing,
                    "match_kind": MatchKind.EXISTING,
                    "keyword": None,
                    "substitution": None,
                    "conversation": conversation,
                    "newly_assigned": False,
                }
            logger.warning(
                f"Bound agent {conversation.agent_id} is no longer usable; re-resolving conversation {conversation.id}"
            )
            conversation = await self.repository.patch_conversation(
                conversation.id, {"agent_id": None, "state": {"assignment": None}}
            )

        if conversation.broadcast_id:
            result = await self.find_agent_with_keyword_fallback(conversation.broadcast_id, text, conversation)
        else:
            result = await self.resolve_regular(business_id or conversation.business_id, text)
        if not result["success"]:
            return result

        assignment = AgentAssignment(
            match_kind=result["match_kind"].value,
            keyword=result.get("keyword"),
            substitution=result["substitution"].value if result.get("substitution") else None,
            assigned_at=datetime.utcnow(),
        )
        conversation = await self.repository.patch_conversation(
            conversation.id, {"agent_id": result["agent"].id, "state": {"assignment": assignment}}
        )
        logger.info(
            f"Agent {result['agent'].id} assigned to conversation {conversation.id} "
            f"(match={result['match_kind'].value}, keyword={result.get('keyword')})"
        )
        result["conversation"] = conversation
        result["newly_assigned"] = True
        return result

    @staticmethod
    def _mode(conversation: Conversation) -> str:
        return "broadcast" if conversation.broadcast_id else "regular"

    # ------------------------------------------------------------------ #
    # Regular mode
    # ------------------------------------------------------------------ #

    async def resolve_regular(self, business_id: Optional[str], text: Optional[str]) -> ResolutionResult:
        agents = await self.repository.find_agents_by_business(business_id) if business_id else []
        usable = [a for a in agents if a.is_usable]
        if not usable:
            logger.warning(f"No usable agents found for business {business_id}")
            return _failure(
                ResolverCode.NO_SUITABLE_AGENT,
                "No suitable agent found for this conversation",
                business_id=business_id,
                total_agents=len(agents),
            )

        lowered = (text or "").lower()
        if lowered:
            for agent in usable:
                for keyword in agent.key_words:
                    if keyword and keyword.lower() in lowered:
                        agent_resolution_counter.labels(mode="regular", match_kind=MatchKind.KEYWORD.value).inc()
                        return {"success": True, "agent": agent, "match_kind": MatchKind.KEYWORD, "keyword": keyword, "substitution": None}

        agent_resolution_counter.labels(mode="regular", match_kind=MatchKind.FIRST_USABLE.value).inc()
        return {"success": True, "agent": usable[0], "match_kind": MatchKind.FIRST_USABLE, "keyword": None, "substitution": None}

    # ------------------------------------------------------------------ #
    # Broadcast mode
    # ------------------------------------------------------------------ #

    async def find_agent_with_keyword_fallback(
        self, broadcast_id: Optional[str], text: Optional[str], conversation: Optional[Conversation] = None
    ) -> ResolutionResult:
        if not broadcast_id:
            return _failure(ResolverCode.NO_BROADCAST_ID, "No broadcast_id found in conversation data")
        broadcast = await self.repository.find_broadcast(broadcast_id)
        if not broadcast:
            return _failure(ResolverCode.BROADCAST_NOT_FOUND, "Broadcast not found", broadcast_id=broadcast_id)
        if not broadcast.has_agent_mapping:
            return _failure(
                ResolverCode.NO_AGENT_MAPPING,
                "No agent mapping available in broadcast",
                broadcast_id=broadcast_id,
                broadcast_type=broadcast.type,
            )

        keyword, agent_id, match_kind = match_mapping_keyword(broadcast.agent_mapping, text)
        logger.info(f"Broadcast {broadcast_id}: {match_kind.value} keyword match '{keyword}' -> agent {agent_id}")

        agent = await self.repository.get_agent(agent_id)
        substitution: Optional[Substitution] = None

        if not (agent and agent.is_usable):
            logger.warning(f"Matched agent {agent_id} for keyword '{keyword}' is missing or inactive")
            agent, keyword, substitution = await self._substitute(broadcast, agent_id, keyword, conversation)
            if agent is None:
                return await self._no_active_agents(broadcast, agent_id, keyword)

        agent_resolution_counter.labels(mode="broadcast", match_kind=match_kind.value).inc()
        return {
            "success": True,
            "agent": agent,
            "match_kind": match_kind,
            "keyword": keyword,
            "substitution": substitution,
            "broadcast": broadcast,
        }

    async def _substitute(self, broadcast: Broadcast, original_agent_id: str, original_keyword: str, conversation):
        mapped_ids = list(dict.fromkeys(broadcast.agent_mapping.values()))
        for mapped_id in mapped_ids:
            candidate = await self.repository.get_agent(mapped_id)
            if candidate and candidate.is_usable:
                keyword = next(k for k, v in broadcast.agent_mapping.items() if v == candidate.id)
                logger.info(f"Using mapped default agent {candidate.id} instead of {original_agent_id}")
                agent_substitution_counter.labels(scope=Substitution.MAPPING_DEFAULT.value).inc()
                return candidate, keyword, Substitution.MAPPING_DEFAULT

        all_agents = await self.repository.list_agents()
        system_agent = next((a for a in all_agents if a.is_usable), None)
        if system_agent is None:
            return None, original_keyword, None

        # The substituted agent is not part of this broadcast: make that visible.
        agent_substitution_counter.labels(scope=Substitution.SYSTEM_WIDE.value).inc()
        log.warning(
            "agent_substituted_system_wide",
            broadcast_id=broadcast.id,
            original_agent_id=original_agent_id,
            original_keyword=original_keyword,
            substitute_agent_id=system_agent.id,
            substitute_agent_name=system_agent.name,
            conversation_id=conversation.id if conversation else None,
        )
        if self.tracker and conversation:
            await self.tracker.track(conversation.id, EventType.AGENT_SUBSTITUTED, {
                "scope": Substitution.SYSTEM_WIDE.value,
                "original_agent_id": original_agent_id,
                "substitute_agent_id": system_agent.id,
                "broadcast_id": broadcast.id,
            })
        return system_agent, next(iter(broadcast.agent_mapping)), Substitution.SYSTEM_WIDE

    async def _no_active_agents(self, broadcast: Broadcast, agent_id: str, keyword: str) -> ResolutionResult:
        all_agents = await self.repository.list_agents()
        usable = [a for a in all_agents if a.is_usable]
        statuses = _status_counts(all_agents)
        logger.error(
            f"No active agents found in entire system (broadcast={broadcast.id}, "
            f"total={len(all_agents)}, statuses={statuses})"
        )
        if self.alerting:
            await self.alerting.send_critical_alert(
                "No active agents available system-wide",
                {"broadcast_id": broadcast.id, "total_agents": len(all_agents), "status_counts": statuses},
            )
        suggestion = (
            f"Consider activating one of the existing agents by setting their status to one of: {', '.join(USABLE_AGENT_STATUSES)}"
            if all_agents else
            "No agents exist in the system. Create and activate at least one agent."
        )
        return _failure(
            ResolverCode.NO_ACTIVE_AGENTS_SYSTEM_WIDE,
            "No active agents available in entire system",
            broadcast_type=broadcast.type,
            original_matched_agent_id=agent_id,
            original_matched_keyword=keyword,
            available_agent_ids=list(dict.fromkeys(broadcast.agent_mapping.values())),
            total_agents=len(all_agents),
            usable_agents=len(usable),
            status_counts=statuses,
            suggestion=suggestion,
        )

    # ------------------------------------------------------------------ #
    # Operator helpers
    # ------------------------------------------------------------------ #

    async def validate_agent_for_broadcast(
        self, agent_id: str, broadcast_id: Optional[str] = None, conversation: Optional[Conversation] = None
    ) -> ResolutionResult:
        """Check whether an agent may serve a broadcast conversation (strict for outbound)."""
        try:
            broadcast_id = broadcast_id or (conversation.broadcast_id if conversation else None)
            if not broadcast_id:
                return _failure(ResolverCode.NO_BROADCAST_ID, "No broadcast_id found in conversation data")
            broadcast = await self.repository.find_broadcast(broadcast_id)
            if not broadcast:
                return _failure(ResolverCode.BROADCAST_NOT_FOUND, "Broadcast not found", broadcast_id=broadcast_id)

            mapped_ids = list(broadcast.agent_mapping.values())
            keywords = [k for k, v in broadcast.agent_mapping.items() if v == agent_id]
            agent = await self.repository.get_agent(agent_id)

            if broadcast.type == "outbound":
                if agent_id not in mapped_ids:
                    return _failure(
                        ResolverCode.AGENT_NOT_IN_MAPPING,
                        "Agent not available for this outbound broadcast",
                        requested_agent_id=agent_id,
                        available_agent_ids=mapped_ids,
                        validation_mode="strict_broadcast_mapping",
                    )
                if not (agent and agent.is_usable):
                    return _failure(
                        ResolverCode.AGENT_INACTIVE_OR_NOT_FOUND,
                        "Agent exists in broadcast mapping but is not active or not found",
                        requested_agent_id=agent_id,
                        validation_mode="strict_broadcast_mapping",
                    )
                mode = "strict_broadcast_mapping"
            else:
                if not (agent and agent.is_usable):
                    return _failure(
                        ResolverCode.AGENT_NOT_FOUND,
                        "Agent not found or inactive",
                        requested_agent_id=agent_id,
                        validation_mode="regular_agent_lookup",
                    )
                mode = "regular_agent_lookup"

            return {
                "success": True,
                "agent": agent,
                "broadcast": broadcast,
                "details": {"keywords": keywords, "broadcast_type": broadcast.type, "validation_mode": mode},
            }
        except Exception as e:
            logger.error(f"Error validating agent for broadcast: {e}")
            return _failure(ResolverCode.INTERNAL_ERROR, "Internal validation error", original_error=str(e))

    async def get_valid_agents_for_broadcast(self, broadcast_id: str) -> Dict[str, Any]:
        broadcast = await self.repository.find_broadcast(broadcast_id)
        if not broadcast:
            return {"success": False, "code": ResolverCode.BROADCAST_NOT_FOUND, "error": "Broadcast not found"}

        def keywords_for(agent_id: str) -> List[str]:
            return [k for k, v in broadcast.agent_mapping.items() if v == agent_id]

        if broadcast.type == "outbound":
            agents = []
            for agent_id in dict.fromkeys(broadcast.agent_mapping.values()):
                agent = await self.repository.get_agent(agent_id)
                if agent and agent.is_usable:
                    agents.append({**agent.model_dump(), "keywords": keywords_for(agent.id)})
            return {
                "success": True,
                "agents": agents,
                "broadcast": {"id": broadcast.id, "name": broadcast.name, "type": broadcast.type},
                "validation_mode": "strict_broadcast_mapping",
                "total_mappings": len(broadcast.agent_mapping),
            }

        mapped = set(broadcast.agent_mapping.values())
        agents = [
            {**a.model_dump(), "is_in_broadcast_mapping": a.id in mapped, "keywords": keywords_for(a.id)}
            for a in await self.repository.list_agents() if a.is_usable
        ]
        return {
            "success": True,
            "agents": agents,
            "broadcast": {"id": broadcast.id, "name": broadcast.name, "type": broadcast.type},
            "validation_mode": "regular_agent_lookup",
            "total_agents": len(agents),
        }

    async def get_system_agent_status(self) -> Dict[str, Any]:
        try:
            agents = await self.repository.list_agents()
        except Exception as e:
            logger.error(f"Error getting system agent status: {e}")
            return {"total_agents": 0, "status_counts": {}, "has_active_agents": False,
                    "valid_statuses": list(USABLE_AGENT_STATUSES), "usable_agents": [], "error": str(e)}
        usable = [a for a in agents if a.is_usable]
        return {
            "total_agents": len(agents),
            "status_counts": _status_counts(agents),
            "has_active_agents": bool(usable),
            "valid_statuses": list(USABLE_AGENT_STATUSES),
            "usable_agents": [a.id for a in usable],
        }
