"""Deterministic trait derivation seeded by the subject id."""

from __future__ import annotations

import random
from typing import Any, Dict, List, Sequence, Tuple

from ..collaborators import AttributeGenerator, Attributes
from ..errors import StageError


WEAPONS: Sequence[Tuple[str, int]] = (
    ("Katana", 30),
    ("Shuriken", 25),
    ("Nunchucks", 20),
    ("Kusarigama", 15),
    ("Tessen", 10),
)
ELEMENTS: Sequence[Tuple[str, int]] = (
    ("Shadow", 30),
    ("Fire", 20),
    ("Water", 20),
    ("Wind", 15),
    ("Earth", 10),
    ("Lightning", 5),
)
BACKGROUNDS: Dict[str, str] = {
    "Fire": "ancient temple courtyard illuminated by red lanterns and fire basins",
    "Water": "misty river with karst mountains and a stone bridge",
    "Earth": "scholar's garden with rockeries, pine trees and ornate pavilions",
    "Wind": "bamboo grove with fluttering flags and a winding stone path",
    "Shadow": "moonlit rooftops of a walled city with curved eaves and lanterns",
    "Lightning": "mountain monastery struck by lightning atop jagged peaks",
}
TIERS: Sequence[Tuple[str, int]] = (
    ("Common", 50),
    ("Uncommon", 30),
    ("Rare", 15),
    ("Legendary", 5),
)


def _pick(rng: random.Random, table: Sequence[Tuple[str, int]]) -> str:
    values = [value for value, _ in table]
    weights = [weight for _, weight in table]
    return rng.choices(values, weights=weights, k=1)[0]


class SeededAttributeGenerator(AttributeGenerator):
    """Same subject and breed always yield the same traits."""

    def __init__(self, collection_name: str = "Pixel Ninja"):
        self.collection_name = collection_name

    async def generate(self, subject_id: str, parameters: Dict[str, Any]) -> Attributes:
        breed = str(parameters.get("breed") or "").strip()
        if not breed:
            raise StageError(f"No breed supplied for token {subject_id}")

        rng = random.Random(f"{subject_id}:{breed}")
        weapon = _pick(rng, WEAPONS)
        element = _pick(rng, ELEMENTS)
        tier = _pick(rng, TIERS)
        stats = {name: rng.randint(1, 100) for name in ("agility", "stealth", "power")}

        traits: List[Dict[str, Any]] = [
            {"trait_type": "Breed", "value": breed},
            {"trait_type": "Weapon", "value": weapon},
            {"trait_type": "Element", "value": element},
            {"trait_type": "Rarity", "value": tier},
        ]
        traits.extend(
            {"trait_type": name.capitalize(), "value": value, "display_type": "number"}
            for name, value in stats.items()
        )

        prompt = (
            f"32x32 pixel art {breed} ninja cat wielding a {weapon} in attack pose. "
            f"Background is a {BACKGROUNDS[element]}. Retro game style with limited colors."
        )
        extras = str(parameters.get("prompt_extras") or "").strip()
        if extras:
            prompt = f"{prompt} {extras}"

        return Attributes(
            name=f"{self.collection_name} {breed} #{subject_id}",
            description=f"AI-generated pixel ninja cat. A {tier} {breed} ninja with {weapon} skills.",
            traits=traits,
            rarity={"tier": tier, "score": sum(stats.values())},
            prompt=prompt,
        )
