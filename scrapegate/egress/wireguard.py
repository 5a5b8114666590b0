"""
WireGuard configuration parsing and validation.

A configuration is accepted when it has an ``[Interface]`` section with a
``PrivateKey`` and a ``[Peer]`` section with ``PublicKey`` and ``Endpoint``.
"""

import configparser
import re
import time
from dataclasses import dataclass

from pydantic import BaseModel, Field, ValidationError

from scrapegate.errors import ConfigValidationError


REQUIRED_KEYS = {
    "Interface": ("PrivateKey",),
    "Peer": ("PublicKey", "Endpoint"),
}


class EgressRegistration(BaseModel):
    """Minimal schema for registering an egress point."""

    name: str = Field(min_length=1)
    location: str = Field(min_length=1)
    config: str = Field(min_length=1)


@dataclass(frozen=True)
class ParsedConfig:
    """The parts of a WireGuard configuration the registry relies on."""

    endpoint: str
    public_key: str


def parse_config(config_text: str) -> ParsedConfig:
    """
    Validate a WireGuard configuration and extract its peer endpoint.

    Raises:
        ConfigValidationError: if sections or keys are missing
    """
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    parser.optionxform = str  # keys are case-sensitive in wg configs

    try:
        parser.read_string(config_text)
    except configparser.Error as e:
        raise ConfigValidationError(f"Invalid WireGuard configuration format: {e}") from e

    for section, keys in REQUIRED_KEYS.items():
        if not parser.has_section(section):
            raise ConfigValidationError(f"Invalid WireGuard configuration: missing [{section}] section")
        for key in keys:
            if not parser.get(section, key, fallback="").strip():
                raise ConfigValidationError(
                    f"Invalid WireGuard configuration: [{section}] is missing {key}"
                )

    return ParsedConfig(
        endpoint=parser.get("Peer", "Endpoint").strip(),
        public_key=parser.get("Peer", "PublicKey").strip(),
    )


def validate_registration(name: str, location: str, config_text: str) -> ParsedConfig:
    """Validate a registration request as a whole."""
    try:
        EgressRegistration(name=name, location=location, config=config_text)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid egress registration: {e}") from e
    return parse_config(config_text)


def make_point_id(name: str) -> str:
    """Derive an id from the name and a millisecond stamp."""
    slug = re.sub(r"\s+", "-", name.strip().lower())
    return f"{slug}-{int(time.time() * 1000)}"


# Default NordVPN endpoints (id, name, location, endpoint, peer public key)
DEFAULT_POINTS = [
    ("istanbul-tr", "Istanbul Turkey", "tr", "istanbul.tr.wg.nordhold.net:51820",
     "mlY5bcC+NtXxHYpDSANkiQABeYwAAB4lMwgNhAbE4BI="),
    ("berlin-de", "Berlin Germany", "de", "berlin.de.wg.nordhold.net:51820",
     "3ZNjosvvIqfvu3/BqaLzNNXs9zWO4jXpcXNOmDMDpX0="),
    ("brussels-be", "Brussels Belgium", "be", "brussels.be.wg.nordhold.net:51820",
     "VSa6XYcD279ahd3IuEiUH6VpXn0+h+kWrD4OcN1ExUs="),
    ("dubai-ae", "Dubai UAE", "ae", "dubai.ae.wg.nordhold.net:51820",
     "8YHJW3c2We+C3+Ym7NPVPa3rzuZgx825okEa7+fzHSE="),
]


def render_config(private_key: str, endpoint: str, public_key: str) -> str:
    """Render a full-tunnel client configuration."""
    return (
        "[Interface]\n"
        "Address = 10.5.0.2/16\n"
        f"PrivateKey = {private_key}\n"
        "DNS = 103.86.96.100\n"
        "MTU = 1350\n"
        "\n"
        "[Peer]\n"
        "AllowedIPs = 0.0.0.0/0\n"
        f"Endpoint = {endpoint}\n"
        "PersistentKeepalive = 25\n"
        f"PublicKey = {public_key}\n"
    )
