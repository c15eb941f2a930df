"""Routes tools/call requests to registered handlers."""

from __future__ import annotations

import re
import time
from datetime import date
from typing import Any, Dict, Mapping

from .errors import HandlerError, InvalidArgument, MCPError, UnknownTool
from .protocol import (
    ArgumentValue,
    CallRequest,
    CallResult,
    ParameterSpec,
    ParameterType,
    ToolDescriptor,
)
from .registry import ToolRegistry
from ._logging import get_logger

logger = get_logger(__name__)

DATE_FORMAT = "date"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class Dispatcher:
    """Validates arguments against a tool's schema and invokes its handler.

    Validation and handler failures are returned as error results rather than
    raised, so a bad call never takes the server down. No timeout is applied
    here; the session driving the dispatcher owns that policy.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    async def dispatch(self, request: CallRequest) -> CallResult:
        started = time.perf_counter()
        try:
            entry = self.registry.lookup(request.name)
            arguments = self.validate(entry.descriptor, request.arguments)
        except (UnknownTool, InvalidArgument) as exc:
            logger.warning(
                "Tool call rejected",
                tool=request.name,
                code=exc.kind,
                error=exc.message,
            )
            return CallResult.failure(exc.to_tool_error())

        try:
            output = await entry.handler.handle(arguments)
        except InvalidArgument as exc:
            logger.warning("Tool rejected arguments", tool=request.name, error=exc.message)
            return CallResult.failure(exc.to_tool_error())
        except HandlerError as exc:
            logger.warning(
                "Tool invocation failed",
                tool=request.name,
                error=exc.message,
                retryable=exc.retryable,
            )
            return CallResult.failure(exc.to_tool_error())
        except MCPError as exc:
            logger.warning("Tool invocation failed", tool=request.name, code=exc.kind, error=exc.message)
            return CallResult.failure(HandlerError(exc.message, cause=exc).to_tool_error())
        except Exception as exc:
            logger.error(
                "Tool invocation crashed",
                tool=request.name,
                error=str(exc),
                exc_info=True,
            )
            wrapped = HandlerError(
                str(exc) or type(exc).__name__,
                cause=exc,
                details={"exc_type": type(exc).__name__},
            )
            return CallResult.failure(wrapped.to_tool_error())

        result = output if isinstance(output, CallResult) else CallResult.text(str(output))
        logger.info(
            "Tool invocation succeeded",
            tool=request.name,
            is_error=result.is_error,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return result

    def validate(
        self,
        descriptor: ToolDescriptor,
        arguments: Mapping[str, Any],
    ) -> Dict[str, ArgumentValue]:
        """Check arguments in declared parameter order; raise on the first violation.

        Every declared parameter appears in the returned mapping, with ``None``
        for optional ones the caller left unset.
        """
        validated: Dict[str, ArgumentValue] = {}
        for param in descriptor.parameters:
            validated[param.name] = _validate_parameter(param, arguments.get(param.name))

        extra = sorted(set(arguments) - set(validated))
        if extra:
            logger.debug("Dropping undeclared arguments", tool=descriptor.name, arguments=extra)
        return validated


def _validate_parameter(param: ParameterSpec, value: Any) -> ArgumentValue:
    if value is None or (value == "" and param.type is ParameterType.STRING):
        if param.required:
            raise InvalidArgument(param.name, "is required")
        return None

    if not _matches_type(param.type, value):
        raise InvalidArgument(
            param.name,
            f"must be a {param.type.value}, got {type(value).__name__}",
        )

    if param.format == DATE_FORMAT and not (isinstance(value, str) and _is_date(value)):
        raise InvalidArgument(param.name, "must be a date in YYYY-MM-DD format")
    return value


def _matches_type(expected: ParameterType, value: Any) -> bool:
    if expected is ParameterType.STRING:
        return isinstance(value, str)
    if expected is ParameterType.BOOLEAN:
        return isinstance(value, bool)
    # bool is an int subclass but never a valid number argument
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_date(value: str) -> bool:
    if not _DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True
