"""
Garment section identifiers.

A section is one garment piece of an order item (shirt, dupatta, ...).
Raw piece names arrive in many spellings; Section.parse is the single
place where they are normalized. Everything past that boundary compares
Section members, never strings.
"""

from enum import Enum
from typing import Iterable, List, Union


class Section(str, Enum):
    """Garment pieces that can be tracked as independent sections."""

    # Main garments
    SHIRT = "shirt"
    PANTS = "pants"
    KAFTAN = "kaftan"
    JACKET = "jacket"
    GOWN = "gown"
    PESHWAS = "peshwas"
    SAREE = "saree"
    PETI_COAT = "peti_coat"
    BLOUSE = "blouse"
    SHERWANI = "sherwani"
    KURTA = "kurta"
    FARSHI = "farshi"
    SHARARA = "sharara"
    GHARARA = "gharara"
    LEHNGA = "lehnga"
    UNSTITCHED_SUIT = "unstitched_suit"

    # Add-ons
    DUPATTA = "dupatta"
    VEIL = "veil"
    POUCH = "pouch"
    SHAWL = "shawl"
    HIJAB = "hijab"
    SHOES = "shoes"
    TASSELS = "tassels"
    LACES = "laces"
    BUTTONS = "buttons"

    @classmethod
    def parse(cls, value: Union[str, "Section"]) -> "Section":
        """
        Normalize a raw piece name into a Section.

        Case, surrounding whitespace, spaces and hyphens are ignored, and a
        few common alternate spellings are accepted.

        Args:
            value: Raw piece name or an existing Section

        Returns:
            Matching Section member

        Raises:
            ValueError: If the name is not a known garment piece
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown garment section: {value!r}")

        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown garment section: {value!r}") from None

    @property
    def label(self) -> str:
        """Human readable name, e.g. 'Peti Coat'."""
        return self.value.replace("_", " ").title()

    @property
    def is_add_on(self) -> bool:
        return self in ADD_ON_SECTIONS


_ALIASES = {
    "pant": "pants",
    "trouser": "pants",
    "trousers": "pants",
    "petticoat": "peti_coat",
    "peticoat": "peti_coat",
    "lehenga": "lehnga",
}

ADD_ON_SECTIONS = frozenset(
    {
        Section.DUPATTA,
        Section.VEIL,
        Section.POUCH,
        Section.SHAWL,
        Section.HIJAB,
        Section.SHOES,
        Section.TASSELS,
        Section.LACES,
        Section.BUTTONS,
    }
)


def parse_sections(values: Iterable[Union[str, Section]]) -> List[Section]:
    """Parse several piece names, dropping duplicates but keeping order."""
    result: List[Section] = []
    for value in values:
        section = Section.parse(value)
        if section not in result:
            result.append(section)
    return result
