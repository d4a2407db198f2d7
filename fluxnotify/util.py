"""Helpers shared by the notifiers."""

from __future__ import annotations

import base64
import hashlib
import re
import unicodedata
from urllib.parse import urlsplit

from fluxnotify.events import Event

_SCP_LIKE = re.compile(
    r"^(?:(?P<user>[^@]+)@)?(?P<host>[^:\s/]+):(?:(?P<port>[0-9]{1,5})/)?(?P<path>[^\\].*)$"
)
_HEX = re.compile(r"[0-9a-fA-F]+")
_HASH_ALGORITHMS = {40: "sha1", 64: "sha256"}


def _parse_git_url(address: str) -> tuple[str, str, str]:
    if "://" in address:
        parts = urlsplit(address)
        parts.port  # raises ValueError for a malformed port
        if not parts.scheme:
            raise ValueError("missing scheme")
        return parts.scheme, parts.netloc.rpartition("@")[2], parts.path
    match = _SCP_LIKE.match(address)
    if match:
        host = match["host"]
        if match["port"]:
            host = f"{host}:{match['port']}"
        return "ssh", host, match["path"]
    return "file", "", address


def parse_git_address(address: str) -> tuple[str, str]:
    """Split a Git remote into its HTTP(S) host URL and repository id."""
    try:
        scheme, host, path = _parse_git_url(address)
    except ValueError as err:
        raise ValueError(f"failed parsing URL {address!r}: {err}") from err
    if scheme == "ssh":
        scheme = "https"
    repo_id = path.lstrip("/").removesuffix(".git")
    return f"{scheme}://{host}", repo_id


def format_name_and_description(event: Event) -> tuple[str, str]:
    """Lower-case ``kind/name`` and a spaced-out reason."""
    ref = event.involved_object
    name = f"{ref.kind}/{ref.name}".lower()
    desc = " ".join(split_camelcase(event.reason)).lower()
    return name, desc


def generate_commit_status_id(provider_uid: str, event: Event) -> str:
    """A per-cluster commit status id from the provider UID and object."""
    ref = event.involved_object
    return f"{ref.kind}/{ref.name}/{provider_uid.split('-')[0]}".lower()


def _char_class(ch: str) -> int:
    return {"Ll": 1, "Lu": 2, "Nd": 3}.get(unicodedata.category(ch), 4)


def split_camelcase(src: str) -> list[str]:
    """Split a CamelCase string into words, keeping acronyms together."""
    groups: list[list[str]] = []
    last = 0
    for ch in src:
        cls = _char_class(ch)
        if groups and cls == last:
            groups[-1].append(ch)
        else:
            groups.append([ch])
        last = cls
    # "PDFL", "oader" -> "PDF", "Loader"
    for current, following in zip(groups, groups[1:]):
        if current and _char_class(current[0]) == 2 and _char_class(following[0]) == 1:
            following.insert(0, current.pop())
    return ["".join(group) for group in groups if group]


def _hash_algorithm(digest: str) -> str | None:
    if _HEX.fullmatch(digest):
        return _HASH_ALGORITHMS.get(len(digest))
    return None


def _transform_revision(rev: str) -> str:
    if not rev or ":" in rev:
        return rev
    head, sep, tail = rev.rpartition("/")
    if sep:
        algo = _hash_algorithm(tail)
        if algo:
            if head != "HEAD":
                return f"{head}@{algo}:{tail}"
            return f"{algo}:{tail}"
    algo = _hash_algorithm(rev)
    if algo:
        return f"{algo}:{rev}"
    return rev


def parse_revision(rev: str) -> str:
    """Extract the commit hash from a source revision string."""
    transformed = _transform_revision(rev)
    digest = transformed.rpartition(":")[2]
    if not digest or _hash_algorithm(digest) is None:
        raise ValueError(f"failed to extract commit hash from '{rev}' revision")
    return digest


def sha1_string(text: str) -> str:
    """Hex SHA-1 digest of the UTF-8 encoded text."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def basic_auth(username: str, password: str) -> str:
    """Base64 credentials for an HTTP Basic Authorization header."""
    return base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")