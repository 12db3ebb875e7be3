from __future__ import annotations

import re

from redirector.errors import ValidationError

USER_PREFIX = "user:"
PATH_DELIMITER = ":path:"
GLOBAL_INDEX_KEY = "global:mappings:list"

USER_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
MAPPING_KEY_RE = re.compile(r"^user:[A-Za-z0-9_-]+:path:.+$")


def encode(user_id: str, custom_path: str) -> str:
    """
    user:{userId}:path:{customPath}
    No normalization: callers supply exact values.
    """
    return f"{USER_PREFIX}{user_id}{PATH_DELIMITER}{custom_path}"


def decode(key: str) -> tuple[str, str]:
    """
    Inverse of encode() for keys whose userId has no ':'.
    userId is cut at the first ':' after the prefix; customPath is
    everything after the first ':path:'.
    """
    if not key.startswith(USER_PREFIX) or PATH_DELIMITER not in key:
        raise ValidationError(
            "Invalid mapping key format. Use format: user:{userId}:path:{customPath}"
        )
    user_id = key[len(USER_PREFIX) :].split(":", 1)[0]
    custom_path = key.split(PATH_DELIMITER, 1)[1]
    return user_id, custom_path


def is_well_formed(key: str) -> bool:
    return MAPPING_KEY_RE.match(key) is not None


def is_valid_user_id(user_id: str) -> bool:
    return USER_ID_RE.match(user_id) is not None


def user_index_key(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}:mappings:list"
