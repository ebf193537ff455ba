"""
File naming: templated target names and collision-safe resolution.

Names are built as ``[prefix]<sep><ai name><sep>[suffix].<ext>`` and made unique by
probing ``base-2.ext``, ``base-3.ext``, ... until the caller reports a free name.
"""

import re
from collections.abc import Callable
from pathlib import PurePath

UNNAMED_IMAGE = "unnamed-image"
FIRST_COLLISION_COUNTER = 2

_INVALID_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHEN_RUNS = re.compile(r"-+")
_PATH_CHARS = re.compile(r"[/\\\x00]")


def normalize_extension(extension: str) -> str:
    """
    Lower-case an extension and make sure it starts with a dot.

    Examples:
        >>> normalize_extension("JPG")
        '.jpg'
        >>> normalize_extension(".Png")
        '.png'

    """
    extension = extension.strip()
    if not extension.lstrip("."):
        msg = "extension must not be empty"
        raise ValueError(msg)
    if not extension.startswith("."):
        extension = f".{extension}"
    return extension.lower()


def build_file_name(
    prefix: str,
    ai_name: str,
    suffix: str,
    separator: str,
    original_extension: str,
) -> str:
    """
    Join prefix, AI-suggested name and suffix into a target file name.

    Prefix and suffix are trimmed and left out entirely when blank, so the separator never
    dangles next to a missing part. The separator is used verbatim. The base name keeps the
    case of ``ai_name``; only the extension is normalized.

    Args:
        prefix: Optional leading part (e.g. "blog")
        ai_name: Descriptive slug suggested by the analysis (e.g. "red-fox-in-snow")
        suffix: Optional trailing part (e.g. "hero")
        separator: String placed between the parts
        original_extension: Extension of the source file, with or without the leading dot

    Returns:
        The target file name.

    Examples:
        >>> build_file_name("blog", "red-fox-in-snow", "hero", "-", "JPG")
        'blog-red-fox-in-snow-hero.jpg'
        >>> build_file_name("  ", "sunset", "", "_", ".png")
        'sunset.png'

    """
    parts: list[str] = []
    if prefix.strip():
        parts.append(prefix.strip())
    parts.append(ai_name.strip())
    if suffix.strip():
        parts.append(suffix.strip())
    return separator.join(parts) + normalize_extension(original_extension)


def split_file_name(file_name: str) -> tuple[str, str]:
    """
    Split a file name into base and extension (extension keeps its dot).

    A leading dot does not start an extension.

    Examples:
        >>> split_file_name("photo.final.jpg")
        ('photo.final', '.jpg')
        >>> split_file_name("README")
        ('README', '')

    """
    index = file_name.rfind(".")
    if index <= 0:
        return file_name, ""
    return file_name[:index], file_name[index:]


def resolve_unique(candidate_name: str, is_taken: Callable[[str], bool]) -> str:
    """
    Return ``candidate_name`` or the first free ``base-N.ext`` variant, N starting at 2.

    The counter only grows, so the loop ends as soon as ``is_taken`` reports a free name,
    which happens for any finite set of taken names.

    Args:
        candidate_name: Proposed file name
        is_taken: Predicate telling whether a name is already in use

    Returns:
        A name for which ``is_taken`` returned False.

    Examples:
        >>> resolve_unique("photo.jpg", {"photo.jpg", "photo-2.jpg"}.__contains__)
        'photo-3.jpg'

    """
    if not is_taken(candidate_name):
        return candidate_name

    base, extension = split_file_name(candidate_name)
    counter = FIRST_COLLISION_COUNTER
    while True:
        probe = f"{base}-{counter}{extension}"
        if not is_taken(probe):
            return probe
        counter += 1


def sanitize_for_filename(text: str) -> str:
    """
    Turn free text into a lower-case kebab-case slug.

    Examples:
        >>> sanitize_for_filename("  Red Fox -- in the Snow! ")
        'red-fox-in-the-snow'

    """
    slug = _INVALID_SLUG_CHARS.sub("", text.lower())
    slug = _WHITESPACE.sub("-", slug.strip())
    slug = _HYPHEN_RUNS.sub("-", slug)
    return slug.strip("-")


def descriptive_slug(text: str) -> str:
    """Sanitize an AI-suggested name, falling back to a placeholder when nothing is left."""
    return sanitize_for_filename(text) or UNNAMED_IMAGE


def check_plain_name(name: str) -> str:
    """
    Strip a user-supplied base name and make sure it names a single visible file.

    Path separators, NUL, ``..`` and a leading dot are refused. A blank name is returned as
    an empty string; callers decide what to fall back to.

    Examples:
        >>> check_plain_name("  Red Fox ")
        'Red Fox'
        >>> check_plain_name("../escaped")
        Traceback (most recent call last):
        ...
        ValueError: not a plain file name: '../escaped'

    """
    name = name.strip()
    if _PATH_CHARS.search(name) or ".." in name or name.startswith("."):
        msg = f"not a plain file name: {name!r}"
        raise ValueError(msg)
    return name


def get_extension(file_name: str) -> str:
    """
    Return the lower-cased extension of a file name, or an empty string.

    Examples:
        >>> get_extension("IMG_0001.JPEG")
        '.jpeg'

    """
    return PurePath(file_name).suffix.lower()


def sidecar_name(file_name: str) -> str:
    """Return the metadata sidecar name that accompanies an exported file."""
    base, _ = split_file_name(file_name)
    return f"{base}.md"
