"""
Template Variable Resolver

Substitutes ``{{variable | filter:arg}}`` tokens inside configuration
documents. Lookups fall back from the caller's context to dotted paths and
then to computed providers; anything unresolved is left as literal text so
rendering never fails on bad input.
"""

import json
from typing import Any, Callable, Mapping

import structlog

from ..core.exceptions import ResourceConflictError, ValidationError
from .clock import Clock, system_clock
from .identifiers import random_token

logger = structlog.get_logger(__name__)

TOKEN_OPEN = "{{"
TOKEN_CLOSE = "}}"

FilterFn = Callable[..., Any]
ProviderFn = Callable[[], Any]

_MISSING = object()


def stringify(value: Any) -> str:
    """Render a resolved value into surrounding text"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


class _Registry:
    kind = "entry"

    def __init__(self) -> None:
        self._entries: dict[str, Callable[..., Any]] = {}

    def register(self, name: str, fn: Callable[..., Any]) -> None:
        if not name or not isinstance(name, str):
            raise ValidationError(f"{self.kind} name must be a non-empty string", field="name")
        if not callable(fn):
            raise ValidationError(
                f"{self.kind} '{name}' must be callable", field=name, validation_type=self.kind
            )
        if name in self._entries:
            raise ResourceConflictError(
                f"{self.kind} '{name}' is already registered",
                resource_type=self.kind,
                conflicting_value=name,
            )
        self._entries[name] = fn

    def unregister(self, name: str) -> bool:
        return self._entries.pop(name, None) is not None

    def get(self, name: str) -> Callable[..., Any] | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries


class FilterRegistry(_Registry):
    """Named pure functions ``(value, *args) -> value``"""

    kind = "filter"

    @classmethod
    def with_defaults(cls) -> "FilterRegistry":
        registry = cls()
        for name, fn in DEFAULT_FILTERS.items():
            registry.register(name, fn)
        return registry


class ProviderRegistry(_Registry):
    """Named zero-argument callables evaluated lazily at resolve time"""

    kind = "provider"

    @classmethod
    def with_defaults(
        cls,
        environment: str = "development",
        version: str = "1.0.0",
        clock: Clock = system_clock,
    ) -> "ProviderRegistry":
        registry = cls()
        registry.register("TIMESTAMP", lambda: clock.now().isoformat())
        registry.register("DATE", lambda: clock.now().date().isoformat())
        registry.register("TIME", lambda: clock.now().strftime("%H:%M:%S"))
        registry.register("ENVIRONMENT", lambda: environment)
        registry.register("VERSION", lambda: version)
        registry.register("RANDOM_ID", lambda: random_token(9))
        return registry


# Built-in filters


def _capitalize(value: Any) -> str:
    text = stringify(value)
    return text[:1].upper() + text[1:].lower()


def _truncate(value: Any, length: str = "50", suffix: str = "...") -> str:
    text = stringify(value)
    limit = int(length)
    return text[:limit] + suffix if len(text) > limit else text


def _default(value: Any, fallback: str = "") -> Any:
    return fallback if value is None or value == "" else value


def _replace(value: Any, search: str, replacement: str = "") -> str:
    return stringify(value).replace(search, replacement)


def _split(value: Any, separator: str = ",") -> list[str]:
    return stringify(value).split(separator)


def _join(value: Any, separator: str = ",") -> str:
    if isinstance(value, (list, tuple)):
        return separator.join(stringify(item) for item in value)
    return stringify(value)


def _length(value: Any) -> int:
    if isinstance(value, (list, tuple, dict)):
        return len(value)
    return len(stringify(value))


def _format(value: Any, style: str = "") -> str:
    if style == "currency":
        return f"${float(value or 0):,.2f}"
    if style == "number":
        return f"{float(value or 0):,}"
    if style == "percent":
        return f"{float(value or 0) * 100:.1f}%"
    return stringify(value)


DEFAULT_FILTERS: dict[str, FilterFn] = {
    "uppercase": lambda value: stringify(value).upper(),
    "lowercase": lambda value: stringify(value).lower(),
    "capitalize": _capitalize,
    "title": lambda value: stringify(value).title(),
    "trim": lambda value: stringify(value).strip(),
    "reverse": lambda value: stringify(value)[::-1],
    "truncate": _truncate,
    "default": _default,
    "replace": _replace,
    "split": _split,
    "join": _join,
    "length": _length,
    "json": lambda value: json.dumps(value, separators=(",", ":"), default=str),
    "format": _format,
}


class VariableResolver:
    """
    Recursively resolves template tokens in a document.

    Strings are scanned for tokens, lists and maps are walked element-wise
    (map keys are left untouched) and other scalars pass through. A string
    consisting of exactly one token keeps the resolved value's native type.
    """

    def __init__(
        self,
        filters: FilterRegistry | None = None,
        providers: ProviderRegistry | None = None,
    ):
        self.filters = filters if filters is not None else FilterRegistry.with_defaults()
        self.providers = providers if providers is not None else ProviderRegistry.with_defaults()

    def resolve(self, template: Any, context: Mapping[str, Any] | None = None) -> Any:
        context = context or {}
        if isinstance(template, str):
            return self._resolve_string(template, context)
        if isinstance(template, list):
            return [self.resolve(item, context) for item in template]
        if isinstance(template, dict):
            return {key: self.resolve(value, context) for key, value in template.items()}
        return template

    def _resolve_string(self, text: str, context: Mapping[str, Any]) -> Any:
        if TOKEN_OPEN not in text:
            return text

        stripped = text.strip()
        if (
            stripped == text
            and text.startswith(TOKEN_OPEN)
            and text.endswith(TOKEN_CLOSE)
            and text.find(TOKEN_CLOSE) == len(text) - len(TOKEN_CLOSE)
        ):
            value = self._evaluate(text[len(TOKEN_OPEN) : -len(TOKEN_CLOSE)], text, context)
            return value

        parts: list[str] = []
        cursor = 0
        while True:
            start = text.find(TOKEN_OPEN, cursor)
            if start == -1:
                parts.append(text[cursor:])
                break
            end = text.find(TOKEN_CLOSE, start + len(TOKEN_OPEN))
            if end == -1:
                # Unterminated token stays literal
                parts.append(text[cursor:])
                break
            parts.append(text[cursor:start])
            raw = text[start : end + len(TOKEN_CLOSE)]
            value = self._evaluate(text[start + len(TOKEN_OPEN) : end], raw, context)
            parts.append(value if value is raw else stringify(value))
            cursor = end + len(TOKEN_CLOSE)
        return "".join(parts)

    def _evaluate(self, expression: str, raw: str, context: Mapping[str, Any]) -> Any:
        """Evaluate one token; returns ``raw`` itself when the variable misses."""
        segments = [segment.strip() for segment in expression.split("|")]
        variable = segments[0]
        if not variable:
            return raw

        value = self._lookup(variable, context)
        if value is _MISSING:
            logger.warning("template_variable_unresolved", variable=variable, token=raw)
            return raw

        for filter_expr in segments[1:]:
            value = self._apply_filter(value, filter_expr)
        return value

    def _lookup(self, variable: str, context: Mapping[str, Any]) -> Any:
        if variable in context:
            return context[variable]

        if "." in variable:
            value = _traverse(context, variable.split("."))
            if value is not _MISSING:
                return value

        provider = self.providers.get(variable)
        if provider is not None:
            try:
                return provider()
            except Exception as e:
                logger.warning("template_provider_failed", provider=variable, error=str(e))
                return _MISSING
        return _MISSING

    def _apply_filter(self, value: Any, filter_expr: str) -> Any:
        name, *args = [part.strip() for part in filter_expr.split(":")]
        if not name:
            return value
        fn = self.filters.get(name)
        if fn is None:
            logger.warning("template_filter_unknown", filter=name)
            return value
        try:
            return fn(value, *args)
        except Exception as e:
            logger.warning("template_filter_failed", filter=name, args=args, error=str(e))
            return value


def _traverse(root: Any, path: list[str]) -> Any:
    current = root
    for segment in path:
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current
