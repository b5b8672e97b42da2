"""BIP-44 derivation path value type.

Paths are parsed on every request and never persisted:
- EVM:    m/44'/60'/account'/change/index (at least purpose, coin, account)
- Solana: m/44'/501'/account'[/change'] (every level hardened, SLIP-10 ed25519)

Both "m/44'/60'/0'/0/0" and the device-style "44'/60'/0'/0/0" are accepted.
"""

from dataclasses import dataclass
from typing import Optional

from bip_utils import Bip32PathError, Bip32PathParser

from hwbridge.chains import ChainFamily
from hwbridge.errors import InvalidDerivationPath

HARDENED_OFFSET = 0x80000000
BIP44_PURPOSE = 44

COIN_TYPES: dict[ChainFamily, int] = {
    ChainFamily.EVM: 60,
    ChainFamily.SOLANA: 501,
}


@dataclass(frozen=True)
class PathComponent:
    """One level of a derivation path."""
    index: int
    hardened: bool

    def __post_init__(self):
        if not 0 <= self.index < HARDENED_OFFSET:
            raise InvalidDerivationPath(
                f"Path index out of range: {self.index}", component="derivation"
            )

    @property
    def raw(self) -> int:
        """Index with the hardened bit applied."""
        return self.index + HARDENED_OFFSET if self.hardened else self.index

    def __str__(self) -> str:
        return f"{self.index}'" if self.hardened else str(self.index)


@dataclass(frozen=True)
class DerivationPath:
    """Immutable, validated BIP-44 derivation path."""
    components: tuple[PathComponent, ...]

    @classmethod
    def parse(cls, path: str, family: Optional[ChainFamily] = None) -> "DerivationPath":
        """Parse a path string and optionally validate it for a chain family.

        Args:
            path: "m/44'/60'/0'/0/0" or "44'/60'/0'/0/0" ("h" also marks hardened)
            family: validate purpose/coin-type prefix for this family

        Raises:
            InvalidDerivationPath: on malformed input or a family mismatch
        """
        text = (path or "").strip()
        if not text or text == "m":
            raise InvalidDerivationPath(
                "Derivation path is empty", component="derivation", path=path
            )

        elements = text.split("/")
        if elements[0] == "m":
            elements = elements[1:]
        # Bip32PathParser reads an empty element as index 0
        if any(not element.strip() for element in elements):
            raise InvalidDerivationPath(
                f"Malformed derivation path: empty element in {text!r}",
                component="derivation",
                path=path,
            )

        try:
            indexes = Bip32PathParser.Parse(text).ToList()
        except (Bip32PathError, ValueError) as e:
            raise InvalidDerivationPath(
                f"Malformed derivation path: {e}", component="derivation", path=path
            ) from e

        components = tuple(
            PathComponent(index=idx & ~HARDENED_OFFSET, hardened=idx >= HARDENED_OFFSET)
            for idx in indexes
        )
        parsed = cls(components=components)
        if family is not None:
            parsed.validate_for(family)
        return parsed

    def validate_for(self, family: ChainFamily) -> None:
        """Check the purpose/coin-type prefix and shape required by a family."""
        coin_type = COIN_TYPES[family]
        comps = self.components

        if len(comps) < 2 or comps[0] != PathComponent(BIP44_PURPOSE, True):
            raise InvalidDerivationPath(
                f"Path must start with {BIP44_PURPOSE}'", component="derivation", path=str(self)
            )
        if comps[1] != PathComponent(coin_type, True):
            raise InvalidDerivationPath(
                f"Path coin type must be {coin_type}' for {family.value}",
                component="derivation",
                path=str(self),
            )

        if family == ChainFamily.EVM:
            if not 3 <= len(comps) <= 5:
                raise InvalidDerivationPath(
                    "EVM path needs purpose, coin type and account (3 to 5 levels)",
                    component="derivation",
                    path=str(self),
                )
            if not comps[2].hardened:
                raise InvalidDerivationPath(
                    "EVM account level must be hardened", component="derivation", path=str(self)
                )
        else:
            # ed25519 only supports hardened derivation
            if not 2 <= len(comps) <= 5:
                raise InvalidDerivationPath(
                    "Solana path needs 2 to 5 levels", component="derivation", path=str(self)
                )
            if not all(c.hardened for c in comps):
                raise InvalidDerivationPath(
                    "Every Solana path level must be hardened",
                    component="derivation",
                    path=str(self),
                )

    @property
    def family(self) -> Optional[ChainFamily]:
        """Chain family implied by the coin type, if recognized."""
        if len(self.components) < 2:
            return None
        for family, coin_type in COIN_TYPES.items():
            if self.components[1].index == coin_type:
                return family
        return None

    def to_list(self) -> list[int]:
        """Raw uint32 indexes with hardened bits applied."""
        return [c.raw for c in self.components]

    def to_device_string(self) -> str:
        """Path without the "m/" prefix, as device apps expect."""
        return "/".join(str(c) for c in self.components)

    def __str__(self) -> str:
        return "m/" + self.to_device_string()


def parse_path(path: str, family: Optional[ChainFamily] = None) -> DerivationPath:
    """Shorthand for DerivationPath.parse."""
    return DerivationPath.parse(path, family)
