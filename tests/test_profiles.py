from __future__ import annotations

import logging

from stackforge.profiles import list_profiles, resolve_profile


def test_unknown_profile_returns_base_unchanged(make_config, caplog):
    base = make_config()

    with caplog.at_level(logging.WARNING):
        resolved = resolve_profile(base, "does-not-exist")

    assert resolved is base
    assert "Unknown profile" in caplog.text


def test_profile_disables_optional_steps_only(make_config, caplog):
    base = make_config()

    with caplog.at_level(logging.WARNING):
        resolved = resolve_profile(base, "minimal")

    assert resolved.active_profile == "minimal"
    assert resolved.features["extras"] is False
    assert "p2/d" in resolved.disabled_steps
    assert "p3/e" not in resolved.disabled_steps
    assert "critical" in caplog.text
    assert resolved.enabled_steps("p2") == []
    assert resolved.enabled_steps("p3") == ["p3/e"]


def test_base_configuration_is_not_mutated(make_config):
    base = make_config()

    resolve_profile(base, "minimal")

    assert base.features["extras"] is True
    assert base.disabled_steps == frozenset()
    assert base.active_profile is None


def test_env_pinned_flag_beats_profile(make_config):
    base = make_config(environ={"ENABLE_EXTRAS": "true"})

    resolved = resolve_profile(base, "minimal")

    assert resolved.features["extras"] is True
    assert resolved.disabled_steps == frozenset()


def test_default_profile_from_config(make_config):
    def mutate(d):
        d["run"]["profile"] = "minimal"

    resolved = resolve_profile(make_config(mutate))
    assert resolved.active_profile == "minimal"


def test_no_profile_selected(make_config):
    base = make_config()
    assert resolve_profile(base, None) is base


def test_list_profiles_marks_recommended(make_config):
    def mutate(d):
        d["profiles"]["minimal"]["recommended"] = True
        d["profiles"]["minimal"]["tagline"] = "Bare bones"

    lines = list_profiles(make_config(mutate))
    assert "minimal (recommended) - Bare bones" in lines
