from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime, time as dt_time, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from convoflow.logging import get_logger
from convoflow.service.capabilities import Capabilities
from convoflow.service.errors import WorkflowDefinitionError
from convoflow.service.routing import MAX_PATTERN_LENGTH, evaluate_condition, resolve_path
from convoflow.storage.models import (
    EdgeCondition,
    ExecutionContext,
    Node,
    NodeExecutionResult,
    NodeType,
)

logger = get_logger(__name__)

MAX_VARIABLE_SIZE = 10_000
DEFAULT_WAIT_MS = 1000
DEFAULT_INACTIVITY_MINUTES = 5
DEFAULT_INTENTS = ["general", "support", "sales"]
DEFAULT_EXTRACT_FIELDS = ["email", "name", "phone"]
HANDOFF_MESSAGE = "A human agent will assist you shortly."

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")

Handler = Callable[[Node, Dict[str, Any], ExecutionContext], Awaitable[NodeExecutionResult]]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate(text: Any, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` / ``{{a.b}}`` placeholders with variable values.

    Unknown names are left untouched; oversized values are truncated.
    """
    if text is None:
        return ""
    source = str(text)

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables and "." not in name:
            return match.group(0)
        value = resolve_path(variables, name)
        if value is None and "." in name and name.split(".", 1)[0] not in variables:
            return match.group(0)
        rendered = _stringify(value)
        if len(rendered) > MAX_VARIABLE_SIZE:
            logger.warning("workflow_variable_truncated", variable=name, size=len(rendered))
            rendered = rendered[:MAX_VARIABLE_SIZE] + "..."
        return rendered

    return _PLACEHOLDER_RE.sub(_replace, source)


def interpolate_deep(value: Any, variables: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {k: interpolate_deep(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_deep(v, variables) for v in value]
    return value


def last_message(variables: Mapping[str, Any]) -> str:
    return _stringify(variables.get("lastUserMessage") or variables.get("lastMessage") or "")


def compile_pattern(pattern: str, flags: str = "") -> Optional[re.Pattern]:
    """Compile a graph-supplied pattern, refusing oversized or invalid ones."""
    if len(pattern) > MAX_PATTERN_LENGTH:
        logger.error("workflow_pattern_too_long", pattern_preview=pattern[:50])
        return None
    re_flags = 0
    if "i" in flags:
        re_flags |= re.IGNORECASE
    if "m" in flags:
        re_flags |= re.MULTILINE
    if "s" in flags:
        re_flags |= re.DOTALL
    try:
        return re.compile(pattern, re_flags)
    except re.error as exc:
        logger.error("workflow_pattern_invalid", pattern_preview=pattern[:50], error=str(exc))
        return None


def validate_input(text: str, validation: Optional[Mapping[str, Any]]) -> Tuple[bool, Optional[str], Any]:
    """Check visitor input against an expected-input rule.

    Returns ``(valid, error_message, extracted_value)``.
    """
    if not validation:
        return True, None, text
    kind = str(validation.get("type") or "text").lower()
    custom_error = validation.get("errorMessage")
    value = (text or "").strip()
    if kind == "email":
        return bool(_EMAIL_RE.match(value)), custom_error or "Please enter a valid email address", value
    if kind == "phone":
        return bool(_PHONE_RE.match(value)), custom_error or "Please enter a valid phone number", value
    if kind == "number":
        try:
            number = float(value)
        except ValueError:
            return False, custom_error or "Please enter a number", value
        extracted: Any = int(number) if number.is_integer() else number
        return True, None, extracted
    if kind == "regex":
        compiled = compile_pattern(str(validation.get("pattern") or ".*"), str(validation.get("flags") or ""))
        valid = bool(compiled and compiled.search(value))
        return valid, custom_error or "Invalid format", value
    if kind == "text":
        min_length = int(validation.get("minLength") or 1)
        return len(value) >= min_length, custom_error or "Please enter a response", value
    return True, None, value


def _js_weekday(moment: datetime) -> int:
    # Graph configs number days Sunday=0 .. Saturday=6
    return (moment.weekday() + 1) % 7


def _parse_hhmm(value: Any) -> Optional[dt_time]:
    try:
        hours, minutes = str(value).split(":", 1)
        return dt_time(int(hours), int(minutes))
    except (TypeError, ValueError):
        return None


class NodeExecutor:
    """Dispatches one node to its handler and returns its result.

    The handler table covers every NodeType; a node whose type string is not
    a NodeType is a definition error and never reaches a handler.
    """

    def __init__(
        self,
        capabilities: Capabilities,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.capabilities = capabilities
        self._clock = clock
        self._sleep = sleep
        self._handlers: Dict[NodeType, Handler] = {
            NodeType.TRIGGER_WAIT: self._trigger_wait,
            NodeType.TRIGGER_INACTIVITY: self._trigger_inactivity,
            NodeType.TRIGGER_MESSAGE: self._trigger_message,
            NodeType.TRIGGER_INTENT: self._trigger_intent,
            NodeType.TRIGGER_USER_INPUT: self._trigger_user_input,
            NodeType.CONDITION_KEYWORD: self._condition_keyword,
            NodeType.CONDITION_REGEX: self._condition_regex,
            NodeType.CONDITION_EQUALS: self._condition_equals,
            NodeType.CONDITION_CONTAINS: self._condition_contains,
            NodeType.CONDITION_VARIABLE: self._condition_variable,
            NodeType.CONDITION_SENTIMENT: self._condition_sentiment,
            NodeType.CONDITION_TIME: self._condition_time,
            NodeType.CONDITION_COMPARE: self._condition_compare,
            NodeType.ACTION_MESSAGE: self._action_message,
            NodeType.ACTION_WAIT_FOR_INPUT: self._action_wait_for_input,
            NodeType.ACTION_VALIDATE_INPUT: self._action_validate_input,
            NodeType.ACTION_ASSIGN_HUMAN: self._action_assign_human,
            NodeType.ACTION_SET_VARIABLE: self._action_set_variable,
            NodeType.ACTION_API_CALL: self._action_api_call,
            NodeType.ACTION_EMAIL: self._action_email,
            NodeType.ACTION_DELAY: self._action_delay,
            NodeType.ACTION_END_CONVERSATION: self._action_end_conversation,
            NodeType.AI_RESPONSE: self._ai_response,
            NodeType.AI_SEARCH_KB: self._ai_search_kb,
            NodeType.AI_CLASSIFY_INTENT: self._ai_classify_intent,
            NodeType.AI_EXTRACT_INFO: self._ai_extract_info,
            NodeType.AI_VALIDATE_FORMAT: self._ai_validate_format,
            NodeType.AI_SUMMARIZE: self._ai_summarize,
        }
        missing = [t.value for t in NodeType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"node types without a handler: {missing}")

    def handler_for(self, node: Node) -> Handler:
        node_type = node.node_type
        if node_type is None:
            raise WorkflowDefinitionError(
                f"unknown node type '{node.type}' on node {node.id}",
                detail={"node_id": node.id, "node_type": node.type},
            )
        return self._handlers[node_type]

    async def execute(self, node: Node, context: ExecutionContext) -> NodeExecutionResult:
        handler = self.handler_for(node)
        logger.debug("workflow_node_dispatch", node_id=node.id, node_type=node.type)
        return await handler(node, dict(node.config or {}), context)

    async def _send(self, context: ExecutionContext, text: str) -> None:
        await self.capabilities.messenger.send(context.conversation_id, text)

    # ============ TRIGGERS ============

    async def _trigger_wait(self, node, config, context) -> NodeExecutionResult:
        duration = int(config.get("duration") or DEFAULT_WAIT_MS)
        if config.get("message"):
            await self._send(context, interpolate(config["message"], context.variables))
        await self._sleep(duration / 1000.0)
        return NodeExecutionResult.ok({"waitCompleted": True, "waitedMs": duration})

    async def _trigger_inactivity(self, node, config, context) -> NodeExecutionResult:
        threshold = float(config.get("thresholdMinutes") or DEFAULT_INACTIVITY_MINUTES)
        last_activity = await self.capabilities.directory.last_activity_at(context.conversation_id)
        if last_activity is None:
            return NodeExecutionResult.ok(
                {"inactive": False, "idleMinutes": None, "conditionMet": False},
                should_continue=False,
            )
        if last_activity.tzinfo is None:
            last_activity = last_activity.replace(tzinfo=timezone.utc)
        idle_minutes = (self._clock() - last_activity).total_seconds() / 60.0
        inactive = idle_minutes >= threshold
        return NodeExecutionResult.ok(
            {"inactive": inactive, "idleMinutes": round(idle_minutes, 2), "conditionMet": inactive},
            should_continue=inactive,
        )

    async def _trigger_message(self, node, config, context) -> NodeExecutionResult:
        message = last_message(context.variables)
        lowered = message.lower()
        matched_pattern = None
        for pattern in config.get("patterns") or []:
            if str(pattern).lower() in lowered:
                matched_pattern = pattern
                break
        if matched_pattern is None and config.get("regex"):
            compiled = compile_pattern(str(config["regex"]), str(config.get("flags") or "i"))
            if compiled and compiled.search(message):
                matched_pattern = config["regex"]
        matched = matched_pattern is not None
        return NodeExecutionResult.ok(
            {"triggerMatched": matched, "matchedPattern": matched_pattern},
            should_continue=matched,
        )

    async def _trigger_intent(self, node, config, context) -> NodeExecutionResult:
        intents = [str(i) for i in config.get("intents") or []]
        classification = await self.capabilities.ai.classify_intent(
            last_message(context.variables), intents
        )
        detected = str(classification.get("intent") or "").strip()
        matched = detected.lower() in {i.lower() for i in intents}
        return NodeExecutionResult.ok(
            {
                "intent": detected,
                "intentConfidence": classification.get("confidence"),
                "triggerMatched": matched,
            },
            should_continue=matched,
        )

    async def _suspend_for_input(
        self, config: Dict[str, Any], context: ExecutionContext, *, data: Optional[dict] = None
    ) -> NodeExecutionResult:
        validation = config.get("validation")
        input_type = config.get("inputType") or (validation or {}).get("type") or "text"
        if not validation and input_type in {"email", "phone", "number"}:
            validation = {"type": input_type}
        context.expected_input_type = input_type
        context.expected_input_validation = dict(validation) if validation else None
        if config.get("prompt"):
            await self._send(context, interpolate(config["prompt"], context.variables))
        return NodeExecutionResult.suspend({"waitingForInput": True, **(data or {})})

    async def _trigger_user_input(self, node, config, context) -> NodeExecutionResult:
        return await self._suspend_for_input(config, context)

    # ============ CONDITIONS ============

    @staticmethod
    def _condition(met: bool, **data: Any) -> NodeExecutionResult:
        return NodeExecutionResult.ok({"conditionMet": met, **data}, should_continue=met)

    def _field_text(self, config: Dict[str, Any], context: ExecutionContext) -> str:
        field = config.get("field")
        if field:
            return _stringify(resolve_path(context.variables, field))
        return last_message(context.variables)

    async def _condition_keyword(self, node, config, context) -> NodeExecutionResult:
        text = self._field_text(config, context)
        keywords = [str(k) for k in config.get("keywords") or [] if str(k)]
        case_sensitive = bool(config.get("caseSensitive", False))
        mode = str(config.get("matchType") or config.get("mode") or "any").lower()
        haystack = text if case_sensitive else text.lower()
        needles = keywords if case_sensitive else [k.lower() for k in keywords]
        if mode == "exact":
            matched = [k for k, n in zip(keywords, needles) if haystack.strip() == n.strip()]
            met = bool(matched)
        else:
            matched = [k for k, n in zip(keywords, needles) if n in haystack]
            met = bool(keywords) and (len(matched) == len(keywords) if mode == "all" else bool(matched))
        return self._condition(met, matchedKeywords=matched)

    async def _condition_regex(self, node, config, context) -> NodeExecutionResult:
        text = self._field_text(config, context)
        compiled = compile_pattern(str(config.get("pattern") or ""), str(config.get("flags", "i")))
        if compiled is None:
            return self._condition(False)
        match = compiled.search(text)
        data: Dict[str, Any] = {}
        if match and match.groups():
            data["regexGroups"] = list(match.groups())
        return self._condition(match is not None, **data)

    async def _condition_equals(self, node, config, context) -> NodeExecutionResult:
        field = config.get("field") or "lastUserMessage"
        actual = _stringify(resolve_path(context.variables, field)).strip()
        expected = _stringify(config.get("value")).strip()
        if not config.get("caseSensitive", False):
            actual, expected = actual.lower(), expected.lower()
        return self._condition(actual == expected)

    async def _condition_contains(self, node, config, context) -> NodeExecutionResult:
        field = config.get("field") or "lastUserMessage"
        actual = _stringify(resolve_path(context.variables, field))
        expected = _stringify(config.get("value"))
        if not config.get("caseSensitive", True):
            actual, expected = actual.lower(), expected.lower()
        return self._condition(expected in actual)

    async def _condition_variable(self, node, config, context) -> NodeExecutionResult:
        name = config.get("variable") or config.get("field") or ""
        return self._condition(bool(name) and resolve_path(context.variables, name) is not None)

    async def _condition_sentiment(self, node, config, context) -> NodeExecutionResult:
        expected = str(config.get("sentiment") or "positive").lower()
        analysis = await self.capabilities.ai.analyze_sentiment(last_message(context.variables))
        sentiment = str(analysis.get("sentiment") or "neutral").lower()
        return self._condition(
            sentiment == expected, sentiment=sentiment, sentimentScore=analysis.get("score")
        )

    def _local_now(self, config: Dict[str, Any]) -> datetime:
        now = self._clock()
        tz_name = config.get("timezone")
        if not tz_name:
            return now
        try:
            return now.astimezone(ZoneInfo(str(tz_name)))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("workflow_timezone_unknown", timezone=tz_name)
            return now

    async def _condition_time(self, node, config, context) -> NodeExecutionResult:
        now = self._local_now(config)
        weekday = _js_weekday(now)
        ranges = config.get("timeRanges")
        if ranges:
            current = now.time()
            met = False
            for window in ranges:
                start, end = _parse_hhmm(window.get("start")), _parse_hhmm(window.get("end"))
                days = window.get("days")
                if start is None or end is None or (days is not None and weekday not in days):
                    continue
                # Windows may wrap past midnight
                inside = start <= current < end if start <= end else (current >= start or current < end)
                if inside:
                    met = True
                    break
            return self._condition(met, isBusinessHours=met)
        start_hour = int(config.get("startHour", 9))
        end_hour = int(config.get("endHour", 17))
        work_days = config.get("workDays") or [1, 2, 3, 4, 5]
        met = start_hour <= now.hour < end_hour and weekday in work_days
        return self._condition(met, isBusinessHours=met)

    async def _condition_compare(self, node, config, context) -> NodeExecutionResult:
        condition = EdgeCondition.from_dict(config)
        if not condition.field:
            condition.field = "lastUserMessage"
        return self._condition(evaluate_condition(condition, context.variables))

    # ============ ACTIONS ============

    @staticmethod
    def _next_is_condition(context: ExecutionContext, node: Node) -> bool:
        workflow = context.workflow
        if workflow is None:
            return False
        for edge in workflow.outgoing(node.id):
            target = workflow.node(edge.target_node_id)
            if target is not None and str(target.type).startswith("CONDITION_"):
                return True
        return False

    async def _action_message(self, node, config, context) -> NodeExecutionResult:
        text = interpolate(config.get("message") or "", context.variables)
        await self._send(context, text)
        wait_flag = config.get("waitForResponse")
        # Unset flag: wait when the graph goes straight into a condition on the reply
        should_wait = wait_flag is True or (wait_flag is None and self._next_is_condition(context, node))
        if should_wait:
            return await self._suspend_for_input(
                {"validation": config.get("validation"), "inputType": config.get("inputType")},
                context,
                data={"messageSent": True},
            )
        return NodeExecutionResult.ok({"messageSent": True})

    async def _action_wait_for_input(self, node, config, context) -> NodeExecutionResult:
        return await self._suspend_for_input(config, context)

    async def _action_validate_input(self, node, config, context) -> NodeExecutionResult:
        source = config.get("field")
        text = _stringify(resolve_path(context.variables, source)) if source else last_message(context.variables)
        validation_type = str(config.get("validationType") or "text")
        rule = {
            "type": validation_type,
            "pattern": config.get("regexPattern") or config.get("pattern"),
            "flags": config.get("flags"),
        }
        valid, _, extracted = validate_input(text, rule)
        return NodeExecutionResult.ok(
            {"isValid": valid, "validatedInput": extracted, "inputType": validation_type}
        )

    async def _action_assign_human(self, node, config, context) -> NodeExecutionResult:
        assignment = await self.capabilities.handoff.assign(
            context.conversation_id,
            user_id=config.get("userId"),
            team_id=config.get("teamId"),
            reason=interpolate(config.get("reason"), context.variables) if config.get("reason") else None,
        )
        message = config.get("message", HANDOFF_MESSAGE)
        if message:
            await self._send(context, interpolate(message, context.variables))
        return NodeExecutionResult.ok(
            {
                "assignedToHuman": True,
                "assignedTo": (assignment or {}).get("agent_id") or config.get("userId"),
            }
        )

    async def _action_set_variable(self, node, config, context) -> NodeExecutionResult:
        name = str(config.get("variableName") or "customVar")
        operation = str(config.get("operation") or "set").lower()
        raw = config.get("value", "")
        value = interpolate_deep(raw, context.variables)
        current = resolve_path(context.variables, name)
        if operation in {"increment", "decrement"}:
            step = float(value) if value not in (None, "") else 1.0
            base = float(current) if current not in (None, "") else 0.0
            result: Any = base + step if operation == "increment" else base - step
            if float(result).is_integer():
                result = int(result)
        elif operation == "append":
            if isinstance(current, list):
                result = [*current, value]
            elif isinstance(current, str):
                result = current + _stringify(value)
            elif current is None:
                result = [value]
            else:
                result = [current, value]
        else:
            result = value
        return NodeExecutionResult.ok({name: result})

    async def _action_api_call(self, node, config, context) -> NodeExecutionResult:
        url = interpolate(config.get("url") or "", context.variables)
        method = str(config.get("method") or "GET").upper()
        headers = {str(k): interpolate(v, context.variables) for k, v in (config.get("headers") or {}).items()}
        body = interpolate_deep(config.get("body"), context.variables) if config.get("body") is not None else None
        timeout_ms = config.get("requestTimeout")
        response = await self.capabilities.http.request(
            method,
            url,
            headers=headers,
            json=body,
            timeout=float(timeout_ms) / 1000.0 if timeout_ms else None,
        )
        if config.get("failOnHttpError") and not response.get("ok"):
            raise ConnectionError(f"API call returned HTTP {response.get('status_code')}")
        return NodeExecutionResult.ok(
            {
                "apiResponse": response.get("body"),
                "apiStatusCode": response.get("status_code"),
                "apiSuccess": bool(response.get("ok")),
            }
        )

    async def _action_email(self, node, config, context) -> NodeExecutionResult:
        to = interpolate(config.get("to") or "", context.variables).strip()
        if not _EMAIL_RE.match(to):
            raise ValueError("email action has no valid recipient")
        subject = interpolate(config.get("subject") or "", context.variables)
        body = interpolate(config.get("body") or "", context.variables)
        reply_to = interpolate(config.get("replyTo") or "", context.variables).strip() or None
        delivered = await self.capabilities.email.send(
            to, subject, body, reply_to=reply_to, conversation_id=context.conversation_id
        )
        if not delivered:
            raise ConnectionError("email delivery failed")
        return NodeExecutionResult.ok({"emailSent": True})

    async def _action_delay(self, node, config, context) -> NodeExecutionResult:
        duration = int(config.get("duration") or config.get("delayMs") or DEFAULT_WAIT_MS)
        await self._sleep(duration / 1000.0)
        return NodeExecutionResult.ok({"delayedMs": duration})

    async def _action_end_conversation(self, node, config, context) -> NodeExecutionResult:
        if config.get("message"):
            await self._send(context, interpolate(config["message"], context.variables))
        await self.capabilities.directory.set_status(
            context.conversation_id, str(config.get("status") or "resolved")
        )
        return NodeExecutionResult.ok({"conversationEnded": True}, should_continue=False)

    # ============ AI ============

    async def _ai_response(self, node, config, context) -> NodeExecutionResult:
        system_prompt = interpolate(config.get("prompt") or "Respond to the user", context.variables)
        knowledge = context.variables.get("kbContext") if config.get("useKnowledgeBase", True) else None
        reply = await self.capabilities.ai.complete(
            last_message(context.variables),
            system_prompt=system_prompt,
            context=_stringify(knowledge) or None,
            model=config.get("model"),
            temperature=float(config.get("temperature", 0.7)),
            max_tokens=config.get("maxTokens"),
        )
        if config.get("sendToUser", True) and reply:
            await self._send(context, reply)
        return NodeExecutionResult.ok({"aiResponse": reply})

    async def _ai_search_kb(self, node, config, context) -> NodeExecutionResult:
        knowledge_base_id = config.get("knowledgeBaseId")
        if not knowledge_base_id:
            return NodeExecutionResult.ok({"kbResults": [], "kbContext": ""})
        query = (
            interpolate(config["query"], context.variables)
            if config.get("query")
            else last_message(context.variables) or _stringify(context.variables.get("query"))
        )
        chunks = await self.capabilities.knowledge.search(
            knowledge_base_id, query, int(config.get("limit") or 3)
        )
        results: List[Dict[str, Any]] = [
            {"content": c.content, "score": c.score, "title": c.source} for c in chunks
        ]
        return NodeExecutionResult.ok(
            {"kbResults": results, "kbContext": "\n\n".join(r["content"] for r in results)}
        )

    async def _ai_classify_intent(self, node, config, context) -> NodeExecutionResult:
        intents = [str(i) for i in config.get("intents") or DEFAULT_INTENTS]
        classification = await self.capabilities.ai.classify_intent(
            last_message(context.variables), intents
        )
        raw = str(classification.get("intent") or "").strip()
        by_lower = {i.lower(): i for i in intents}
        intent = by_lower.get(raw.lower()) or config.get("fallbackIntent") or "general"
        return NodeExecutionResult.ok(
            {
                "classifiedIntent": intent,
                "intent": intent,
                "intentConfidence": classification.get("confidence"),
            }
        )

    async def _ai_extract_info(self, node, config, context) -> NodeExecutionResult:
        fields = [str(f) for f in config.get("fields") or DEFAULT_EXTRACT_FIELDS]
        extracted = await self.capabilities.ai.extract_fields(last_message(context.variables), fields)
        return NodeExecutionResult.ok({"extractedInfo": {k: v for k, v in extracted.items() if k in fields}})

    async def _ai_validate_format(self, node, config, context) -> NodeExecutionResult:
        verdict = await self.capabilities.ai.validate_format(
            last_message(context.variables), str(config.get("format") or "text")
        )
        return NodeExecutionResult.ok(
            {"formatValid": bool(verdict.get("valid")), "validationReason": verdict.get("reason")}
        )

    async def _ai_summarize(self, node, config, context) -> NodeExecutionResult:
        messages = await self.capabilities.directory.recent_messages(
            context.conversation_id, int(config.get("messageLimit") or 20)
        )
        transcript = "\n".join(f"{m.role}: {m.content}" for m in messages) or last_message(context.variables)
        summary = await self.capabilities.ai.summarize(
            transcript, max_length=config.get("maxLength")
        )
        return NodeExecutionResult.ok({"summary": summary})
