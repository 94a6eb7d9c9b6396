"""
Tests for template variable resolution: context lookups, dotted paths,
providers, filters and registry handling.
"""

from datetime import datetime, timezone

import pytest

from screenhub.core.exceptions import ResourceConflictError, ValidationError
from screenhub.utils.clock import FrozenClock
from screenhub.utils.template_resolver import (
    FilterRegistry,
    ProviderRegistry,
    VariableResolver,
    stringify,
)


@pytest.fixture
def resolver():
    clock = FrozenClock(start=datetime(2024, 3, 5, 14, 30, 15, tzinfo=timezone.utc))
    return VariableResolver(
        FilterRegistry.with_defaults(),
        ProviderRegistry.with_defaults(environment="staging", version="2.1.0", clock=clock),
    )


class TestLookup:
    """Context, dotted path and provider lookups"""

    def test_plain_context_variable(self, resolver):
        assert resolver.resolve("Hello {{name}}!", {"name": "lobby"}) == "Hello lobby!"

    def test_single_token_keeps_native_type(self, resolver):
        assert resolver.resolve("{{count}}", {"count": 42}) == 42
        assert resolver.resolve("{{ items }}", {"items": [1, 2]}) == [1, 2]

    def test_embedded_token_is_stringified(self, resolver):
        assert resolver.resolve("n={{count}}", {"count": 42}) == "n=42"
        assert resolver.resolve("on={{flag}}", {"flag": True}) == "on=true"

    def test_dotted_path_and_index(self, resolver):
        context = {"screen": {"zones": [{"id": "z1"}, {"id": "z2"}]}}
        assert resolver.resolve("{{screen.zones.1.id}}", context) == "z2"

    def test_missing_variable_left_literal(self, resolver):
        assert resolver.resolve("{{missing.path}}", {}) == "{{missing.path}}"
        assert resolver.resolve("a {{missing}} b", {}) == "a {{missing}} b"

    def test_context_overrides_provider(self, resolver):
        assert resolver.resolve("{{ENVIRONMENT}}", {"ENVIRONMENT": "local"}) == "local"

    def test_providers(self, resolver):
        assert resolver.resolve("{{ENVIRONMENT}}", {}) == "staging"
        assert resolver.resolve("{{VERSION}}", {}) == "2.1.0"
        assert resolver.resolve("{{DATE}}", {}) == "2024-03-05"
        assert resolver.resolve("{{TIME}}", {}) == "14:30:15"
        assert resolver.resolve("{{TIMESTAMP}}", {}).startswith("2024-03-05T14:30:15")
        random_id = resolver.resolve("{{RANDOM_ID}}", {})
        assert len(random_id) == 9 and random_id.isalnum()

    def test_structures_are_walked(self, resolver):
        template = {"title": "{{name | uppercase}}", "tags": ["{{env}}", 3], "{{key}}": None}
        result = resolver.resolve(template, {"name": "lobby", "env": "prod"})
        assert result == {"title": "LOBBY", "tags": ["prod", 3], "{{key}}": None}


class TestMalformedTokens:
    def test_unterminated_token(self, resolver):
        assert resolver.resolve("start {{name", {"name": "x"}) == "start {{name"

    def test_empty_token(self, resolver):
        assert resolver.resolve("{{}}", {}) == "{{}}"

    def test_non_string_scalars_pass_through(self, resolver):
        assert resolver.resolve(3.5, {}) == 3.5
        assert resolver.resolve(None, {}) is None


class TestFilters:
    """Built-in filters and their failure behaviour"""

    def test_chained_filters(self, resolver):
        assert resolver.resolve("{{name | trim | capitalize}}", {"name": "  hELLO "}) == "Hello"

    def test_filter_arguments(self, resolver):
        context = {"text": "abcdefgh"}
        assert resolver.resolve("{{text | truncate:3}}", context) == "abc..."
        assert resolver.resolve("{{text | replace:abc:xyz}}", context) == "xyzdefgh"

    def test_split_join_length(self, resolver):
        assert resolver.resolve("{{csv | split:;}}", {"csv": "a;b"}) == ["a", "b"]
        assert resolver.resolve("{{items | join:-}}", {"items": [1, 2]}) == "1-2"
        assert resolver.resolve("{{items | length}}", {"items": [1, 2, 3]}) == 3

    def test_default_filter(self, resolver):
        assert resolver.resolve("{{name | default:guest}}", {"name": ""}) == "guest"

    def test_format_filter(self, resolver):
        assert resolver.resolve("{{price | format:currency}}", {"price": 1234.5}) == "$1,234.50"
        assert resolver.resolve("{{ratio | format:percent}}", {"ratio": 0.256}) == "25.6%"

    def test_json_filter(self, resolver):
        assert resolver.resolve("{{data | json}}", {"data": {"a": 1}}) == '{"a":1}'

    def test_unknown_filter_passes_value(self, resolver):
        assert resolver.resolve("{{name | sparkle}}", {"name": "x"}) == "x"

    def test_failing_filter_passes_value(self, resolver):
        assert resolver.resolve("{{text | truncate:many}}", {"text": "abc"}) == "abc"


class TestRegistries:
    def test_duplicate_registration_conflicts(self):
        registry = FilterRegistry.with_defaults()
        with pytest.raises(ResourceConflictError):
            registry.register("uppercase", str.upper)

    def test_non_callable_rejected(self):
        with pytest.raises(ValidationError):
            ProviderRegistry().register("NOW", "not callable")

    def test_custom_filter_and_unregister(self):
        filters = FilterRegistry()
        filters.register("double", lambda value: value * 2)
        resolver = VariableResolver(filters, ProviderRegistry())
        assert resolver.resolve("{{n | double}}", {"n": 4}) == 8
        assert filters.unregister("double") is True
        assert "double" not in filters
        assert filters.unregister("double") is False

    def test_failing_provider_is_unresolved(self):
        providers = ProviderRegistry()
        providers.register("BROKEN", lambda: 1 / 0)
        resolver = VariableResolver(FilterRegistry(), providers)
        assert resolver.resolve("{{BROKEN}}", {}) == "{{BROKEN}}"


def test_stringify():
    assert stringify(None) == ""
    assert stringify(False) == "false"
    assert stringify({"a": [1]}) == '{"a":[1]}'
