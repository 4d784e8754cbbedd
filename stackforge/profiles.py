from __future__ import annotations

import dataclasses
import logging
from types import MappingProxyType
from typing import Dict, List, Optional

from .config import Configuration, Profile, compute_disabled_steps

logger = logging.getLogger(__name__)


def get_profile(config: Configuration, name: Optional[str]) -> Optional[Profile]:
    if not name:
        return None
    return config.profiles.get(name) or config.profiles.get(name.lower())


def resolve_profile(base: Configuration, name: Optional[str] = None) -> Configuration:
    """Apply a named profile's feature flags to a copy of ``base``.

    Profiles are advisory: an unknown name logs a warning and returns
    ``base`` unchanged. Flags pinned through ``ENABLE_<GROUP>`` environment
    variables keep their value.
    """

    name = name or base.default_profile
    if not name:
        return base

    profile = get_profile(base, name)
    if profile is None:
        logger.warning(
            "Unknown profile %r (available: %s); continuing with base configuration",
            name,
            ", ".join(sorted(base.profiles)) or "none",
        )
        return base

    features: Dict[str, bool] = dict(base.features)
    for group, enabled in profile.flags.items():
        if group in base.pinned_features:
            logger.debug("Feature %s pinned by environment; profile %s ignored", group, profile.name)
            continue
        features[group] = enabled

    disabled = compute_disabled_steps(base.steps, features)
    logger.info(
        "Profile %s applied (%d step(s) disabled)",
        profile.name,
        len(disabled),
        extra={"fields": {"profile": profile.name, "disabled": sorted(disabled)}},
    )
    return dataclasses.replace(
        base,
        features=MappingProxyType(features),
        disabled_steps=disabled,
        active_profile=profile.name,
    )


def list_profiles(config: Configuration) -> List[str]:
    lines = []
    for name in sorted(config.profiles):
        p = config.profiles[name]
        marker = " (recommended)" if p.recommended else ""
        tagline = f" - {p.tagline}" if p.tagline else ""
        lines.append(f"{name}{marker}{tagline}")
    return lines
