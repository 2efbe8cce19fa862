"""
Image reference resolution.

Parses an image identifier into its canonical, fully-qualified form following
the Docker reference grammar:

    reference := name [ ":" tag ] [ "@" digest ]
    name      := [ domain "/" ] path-component [ "/" path-component ]*

Normalization rules:
- A missing domain defaults to docker.io
- Single-component names on docker.io get the "library/" prefix
- The legacy index.docker.io domain is rewritten to docker.io
- A reference with neither tag nor digest is tagged ":latest"

The canonical name always carries an explicit tag (when no digest pins it)
so callers can tell whether a pull is floating on :latest.
"""

import re
from dataclasses import dataclass

from stepdock.errors import InvalidReference


DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"
NAME_TOTAL_LENGTH_MAX = 255

_ALPHA_NUMERIC = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]+)"
_PATH_COMPONENT = rf"{_ALPHA_NUMERIC}(?:{_SEPARATOR}{_ALPHA_NUMERIC})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_IPV6_ADDRESS = r"\[(?:[a-fA-F0-9:]+)\]"
_DOMAIN = rf"(?:{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*|{_IPV6_ADDRESS})(?::[0-9]+)?"
_TAG = r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*[:][0-9a-fA-F]{32,}"
_NAME = rf"(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*"

REFERENCE_PATTERN = re.compile(
    rf"(?P<name>{_NAME})(?::(?P<tag>{_TAG}))?(?:@(?P<digest>{_DIGEST}))?",
    re.ASCII,
)
ANCHORED_IDENTIFIER_PATTERN = re.compile(r"[a-f0-9]{64}", re.ASCII)


@dataclass(frozen=True)
class ImageReference:
    """
    A resolved image reference.

    Attributes:
        canonical: Fully-qualified reference including an explicit tag
            (e.g. "docker.io/library/alpine:latest")
        domain: Registry domain used to look up credentials
        latest: True iff the canonical reference is tagged ":latest"
    """
    canonical: str
    domain: str
    latest: bool


def _split_docker_domain(name: str) -> tuple[str, str]:
    """Split a reference into (domain, remainder), applying the defaults."""
    i = name.find("/")
    if i == -1 or (
        not any(c in name[:i] for c in ".:")
        and name[:i] != "localhost"
        and name[:i].lower() == name[:i]
    ):
        domain, remainder = DEFAULT_DOMAIN, name
    else:
        domain, remainder = name[:i], name[i + 1:]

    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = OFFICIAL_REPO_PREFIX + remainder
    return domain, remainder


def parse_image(s: str) -> ImageReference:
    """
    Parse an image reference into canonical name, domain and latest flag.

    Args:
        s: Image reference, e.g. "alpine", "alpine:3.9",
           "myregistry.example.com/team/app:stable"

    Returns:
        ImageReference

    Raises:
        InvalidReference: If s does not match the reference grammar
    """
    if not s:
        raise InvalidReference(s, "repository name must have at least one component")
    if ANCHORED_IDENTIFIER_PATTERN.fullmatch(s):
        raise InvalidReference(s, "cannot specify 64-byte hexadecimal strings")

    domain, remainder = _split_docker_domain(s)

    remote_name = remainder.split(":", 1)[0].split("@", 1)[0]
    if remote_name.lower() != remote_name:
        raise InvalidReference(s, "repository name must be lowercase")

    match = REFERENCE_PATTERN.fullmatch(f"{domain}/{remainder}")
    if match is None:
        raise InvalidReference(s, "invalid reference format")

    name = match.group("name")
    if len(name) > NAME_TOTAL_LENGTH_MAX:
        raise InvalidReference(
            s, f"repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters"
        )

    tag = match.group("tag")
    digest = match.group("digest")
    if tag is None and digest is None:
        tag = DEFAULT_TAG

    canonical = name
    if tag is not None:
        canonical += f":{tag}"
    if digest is not None:
        canonical += f"@{digest}"

    return ImageReference(
        canonical=canonical,
        domain=domain,
        latest=canonical.endswith(f":{DEFAULT_TAG}"),
    )
