from __future__ import annotations

import os
import re


def parse_id_set(raw: str | None) -> set[int]:
    if not raw:
        return set()
    out: set[int] = set()
    for tok in re.split(r"[\s,;]+", raw.strip()):
        if not tok:
            continue
        if re.fullmatch(r"\d{8,22}", tok):
            out.add(int(tok))
    return out


def parse_str_set(raw: str | None) -> set[str]:
    if not raw:
        return set()
    return {tok.strip().lower() for tok in re.split(r"[\s,;]+", raw) if tok.strip()}


def resolve_allowed_channel_ids(default_ids: set[int]) -> set[int]:
    env_ids = parse_id_set(os.getenv("GLUE_ALLOWED_CHANNEL_IDS"))
    return env_ids if env_ids else set(default_ids)


def parse_channel_id_token(token: str) -> int | None:
    token = (token or "").strip()
    if not token:
        return None
    # Channel mention: <#1234567890>
    m = re.match(r"^<#!?(\d{8,20})>$", token)
    if m:
        return int(m.group(1))
    m2 = re.match(r"^(\d{8,20})$", token)
    if m2:
        return int(m2.group(1))
    return None


def user_matches_owner(user, owner_ids: set[int], owner_usernames: set[str]) -> bool:
    uid = int(getattr(user, "id", 0) or 0)
    if uid and uid in owner_ids:
        return True
    if owner_ids:
        return False
    names = {
        str(getattr(user, "name", "") or "").strip().lower(),
        str(getattr(user, "global_name", "") or "").strip().lower(),
        str(getattr(user, "display_name", "") or "").strip().lower(),
    }
    return any(n in owner_usernames for n in names if n)
