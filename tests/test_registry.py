"""
Tests for the specialist registry: loading, validation and lookup.
"""

import json

import pytest

from specialist_router.registry import (
    DEFAULT_SPECIALISTS,
    ConfigInvalid,
    SpecialistNotFound,
    SpecialistRegistry,
    load_registry,
)
from specialist_router.utils import ConfigurationError


def _entry(specialist_id, keywords=("alpha",), **overrides):
    entry = {
        "id": specialist_id,
        "label": specialist_id.title(),
        "keywords": list(keywords),
        "intent_keywords": [],
        "threshold": 0.4,
        "prompt_template": "Context: {context}\nQuestion: {query}",
    }
    entry.update(overrides)
    return entry


class TestDefaultRegistry:
    """The built-in specialist set."""

    def test_declaration_order_is_preserved(self, registry):
        ids = [s.id for s in registry.list_specialists()]
        assert ids == [entry["id"] for entry in DEFAULT_SPECIALISTS]

    def test_general_role_is_generic_and_not_scored(self, registry):
        assert registry.general.id == "general"
        assert registry.general.is_generic
        assert "general" not in [s.id for s in registry.scored_specialists()]
        assert len(registry.scored_specialists()) == len(registry) - 1

    def test_get_returns_specialist(self, registry):
        technical = registry.get("technical")
        assert technical.label == "Technical Expert"
        assert "sql" in technical.keywords

    def test_get_unknown_raises(self, registry):
        with pytest.raises(SpecialistNotFound):
            registry.get("astrologer")

    def test_find_normalizes_and_tolerates_unknown(self, registry):
        assert registry.find(" Technical ").id == "technical"
        assert registry.find("astrologer") is None
        assert registry.find(None) is None
        assert registry.find(42) is None

    def test_resolve_none_is_general(self, registry):
        assert registry.resolve(None) is registry.general
        assert registry.resolve("financial").id == "financial"

    def test_contains(self, registry):
        assert "creative" in registry
        assert "astrologer" not in registry

    def test_every_template_has_query_slot(self, registry):
        for specialist in registry.list_specialists():
            assert "{query}" in specialist.prompt_template


class TestRegistryValidation:
    """Configuration errors are detected at load time."""

    def test_empty_configuration_rejected(self):
        with pytest.raises(ConfigInvalid):
            SpecialistRegistry.from_config([])

    def test_non_list_configuration_rejected(self):
        with pytest.raises(ConfigInvalid):
            SpecialistRegistry.from_config({"id": "technical"})

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ConfigInvalid, match="Duplicate"):
            SpecialistRegistry.from_config([_entry("alpha"), _entry("alpha")])

    def test_threshold_out_of_range_rejected(self):
        with pytest.raises(ConfigInvalid):
            SpecialistRegistry.from_config([_entry("alpha", threshold=1.5)])

    def test_missing_keywords_rejected(self):
        with pytest.raises(ConfigInvalid, match="no keywords"):
            SpecialistRegistry.from_config([_entry("alpha", keywords=())])

    def test_template_without_query_rejected(self):
        with pytest.raises(ConfigInvalid, match="placeholder"):
            SpecialistRegistry.from_config([_entry("alpha", prompt_template="Just answer.")])

    def test_invalid_id_rejected(self):
        with pytest.raises(ConfigInvalid):
            SpecialistRegistry.from_config([_entry("Not Valid!")])

    def test_two_generic_roles_rejected(self):
        entries = [
            _entry("helper", keywords=(), is_generic=True),
            _entry("fallback", keywords=(), is_generic=True),
        ]
        with pytest.raises(ConfigInvalid, match="generic"):
            SpecialistRegistry.from_config(entries)

    def test_config_invalid_is_configuration_error(self):
        assert issubclass(ConfigInvalid, ConfigurationError)

    def test_builtin_general_added_when_missing(self):
        registry = SpecialistRegistry.from_config([_entry("alpha")])
        assert [s.id for s in registry.list_specialists()] == ["alpha", "general"]
        assert registry.general.is_generic

    def test_general_id_reserved_for_generic_role(self):
        with pytest.raises(ConfigInvalid, match="reserved"):
            SpecialistRegistry.from_config([_entry("general")])

    def test_keywords_normalized(self):
        registry = SpecialistRegistry.from_config([
            _entry("alpha", keywords=(" SQL ", "sql", "Cash   Flow"))
        ])
        assert registry.get("alpha").keywords == ("sql", "cash flow")


class TestRegistryFromFile:
    """JSON configuration files."""

    def test_list_file(self, tmp_path):
        path = tmp_path / "specialists.json"
        path.write_text(json.dumps([_entry("alpha"), _entry("beta", keywords=("beta",))]))

        registry = SpecialistRegistry.from_file(str(path))
        assert [s.id for s in registry.scored_specialists()] == ["alpha", "beta"]

    def test_object_file(self, tmp_path):
        path = tmp_path / "specialists.json"
        path.write_text(json.dumps({"specialists": [_entry("alpha")]}))

        assert "alpha" in SpecialistRegistry.from_file(str(path))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "specialists.json"
        path.write_text("{not json")

        with pytest.raises(ConfigInvalid):
            SpecialistRegistry.from_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigInvalid):
            SpecialistRegistry.from_file(str(tmp_path / "absent.json"))

    def test_load_registry_uses_configured_path(self, tmp_path):
        path = tmp_path / "specialists.json"
        path.write_text(json.dumps([_entry("alpha")]))

        registry = load_registry({"SPECIALISTS_CONFIG_PATH": str(path)})
        assert "alpha" in registry
        assert "technical" not in registry

    def test_load_registry_defaults(self):
        registry = load_registry({"SPECIALISTS_CONFIG_PATH": ""})
        assert len(registry) == len(DEFAULT_SPECIALISTS)
