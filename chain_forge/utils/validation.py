import re

from chain_forge.exceptions.config import InvalidNameError


def validate_name(name: str) -> None:
    """Check that `name` only uses lowercase letters, digits and single hyphens.

    :raises InvalidNameError: naming the first rule `name` violates.
    """
    if not name:
        raise InvalidNameError(name, "name cannot be empty")

    if name.startswith("-") or name.endswith("-"):
        raise InvalidNameError(name, "name cannot start or end with a hyphen")

    if "--" in name:
        raise InvalidNameError(name, "name cannot contain consecutive hyphens")

    for char in name:
        if ("a" <= char <= "z") or ("0" <= char <= "9") or char == "-":
            continue
        if "A" <= char <= "Z":
            reason = "uppercase letters are not allowed, use lowercase"
        elif char == " ":
            reason = "spaces are not allowed, use hyphens instead"
        elif char == "_":
            reason = "underscores are not allowed, use hyphens instead"
        else:
            reason = f"character '{char}' is not allowed"
        raise InvalidNameError(name, reason)


def sanitize_name(name: str) -> str:
    """Turn `name` into something :func:`validate_name` accepts, e.g. "My Node" -> "my-node"."""
    hyphenated = re.sub(r"[ _]", "-", name.lower())
    cleaned = re.sub(r"[^a-z0-9-]", "", hyphenated)
    return "-".join(part for part in cleaned.split("-") if part)
