"""Resource naming conventions."""

from __future__ import annotations

import random
import string

from sb_lifecycle.config.models import ResourceKind, ScenarioConfig

# Longest generated name per kind; rules keep their declared names.
MAX_NAME_LENGTH: dict[ResourceKind, int] = {
    ResourceKind.RESOURCE_GROUP: 24,
    ResourceKind.NAMESPACE: 20,
    ResourceKind.TOPIC: 24,
    ResourceKind.SUBSCRIPTION: 24,
}

_ALPHABET = string.ascii_lowercase + string.digits


def random_resource_name(
    prefix: str, max_len: int, *, rng: random.Random | None = None
) -> str:
    """Return *prefix* padded with random lowercase characters up to *max_len*.

    If the prefix is already at least *max_len* long it is truncated and a
    minimum of three random characters is still appended, so two calls with
    the same prefix never collide in practice.
    """
    rng = rng or random.Random()
    suffix_len = max(max_len - len(prefix), 3)
    head = prefix[: max_len - suffix_len]
    return head + "".join(rng.choice(_ALPHABET) for _ in range(suffix_len))


def randomize_scenario(
    scenario: ScenarioConfig, *, rng: random.Random | None = None
) -> tuple[ScenarioConfig, dict[str, str]]:
    """Rename every randomisable resource and rewrite all references to it.

    Returns the renamed scenario and the ``declared -> actual`` name map.
    """
    names: dict[str, str] = {}
    for spec in scenario.resources:
        max_len = MAX_NAME_LENGTH.get(spec.kind)
        names[spec.name] = (
            random_resource_name(spec.name, max_len, rng=rng)
            if max_len is not None
            else spec.name
        )

    def _rename(name: str) -> str:
        return names.get(name, name)

    resources = [
        spec.model_copy(
            update={
                "name": _rename(spec.name),
                "parent": _rename(spec.parent) if spec.parent else None,
            }
        )
        for spec in scenario.resources
    ]
    updates = [
        u.model_copy(update={"target": _rename(u.target)}) for u in scenario.updates
    ]
    renamed = scenario.model_copy(
        update={
            "resources": resources,
            "updates": updates,
            "show_keys_for": [_rename(n) for n in scenario.show_keys_for],
            "deletions": [_rename(n) for n in scenario.deletions],
            "randomize_names": False,
        }
    )
    return renamed, names
