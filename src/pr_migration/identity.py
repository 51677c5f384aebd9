"""pr_migration.identity

User identities on the old and new Jellyfin instances, and the mapping
between them.

Accounts are matched across instances by exact display name.  When the new
instance has several accounts with the same name, the last one listed wins;
callers surface such collisions as run warnings via find_name_collisions().
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import requests

from pr_migration.shared import IdentitySourceError

log = logging.getLogger(__name__)

USERS_PATH = "/Users"
_SAMPLE_SIZE = 3


@dataclass(frozen=True)
class Identity:
    id: str
    name: str


@dataclass(frozen=True)
class InstanceConfig:
    base_url: str
    api_token: str = ""


# ---------------------------------------------------------------------------
# Identity source (Jellyfin /Users)
# ---------------------------------------------------------------------------

def _auth_headers(api_token: str) -> dict[str, str]:
    return {
        "Authorization": f'MediaBrowser Token="{api_token}"',
        "X-Emby-Token": api_token,
    }


def fetch_users(
    instance: InstanceConfig,
    session: requests.Session | None = None,
    timeout: int = 30,
) -> list[Identity]:
    """Return every account on a Jellyfin instance.

    Raises:
        IdentitySourceError: transport failure, non-2xx status, or a body
            that is not a JSON list of {Id, Name} objects.
    """
    url = f"{instance.base_url}{USERS_PATH}"
    http = session or requests
    log.info("Fetching users from: %s", url)
    try:
        resp = http.get(url, headers=_auth_headers(instance.api_token), timeout=timeout)
    except requests.RequestException as exc:
        raise IdentitySourceError(f"GET {url} failed: {exc}") from exc

    if not resp.ok:
        raise IdentitySourceError(
            f"API request failed for {url}: {resp.status_code} - {resp.text}"
        )

    try:
        payload = resp.json()
        return [Identity(id=str(u["Id"]), name=str(u["Name"])) for u in payload]
    except (ValueError, TypeError, KeyError) as exc:
        raise IdentitySourceError(f"unexpected /Users payload from {url}: {exc}") from exc


def fetch_users_or_empty(
    label: str,
    instance: InstanceConfig,
    session: requests.Session | None = None,
    timeout: int = 30,
) -> list[Identity]:
    """fetch_users(), degrading any failure to an empty list with a warning."""
    try:
        users = fetch_users(instance, session=session, timeout=timeout)
    except IdentitySourceError as exc:
        log.warning("Error fetching users from %s instance: %s", label, exc)
        return []
    log.info("Fetched %d users from %s instance.", len(users), label)
    for user in users[:_SAMPLE_SIZE]:
        log.info("  User: Name=%r, ID=%r", user.name, user.id)
    return users


def fetch_both(
    old_instance: InstanceConfig,
    new_instance: InstanceConfig,
    timeout: int = 30,
) -> tuple[list[Identity], list[Identity]]:
    """Fetch old and new user lists concurrently; both finish before returning."""
    with ThreadPoolExecutor(max_workers=2) as pool:
        old_future = pool.submit(fetch_users_or_empty, "old", old_instance, None, timeout)
        new_future = pool.submit(fetch_users_or_empty, "new", new_instance, None, timeout)
        return old_future.result(), new_future.result()


def describe_empty_sides(old: list[Identity], new: list[Identity]) -> str | None:
    if not old and not new:
        return "Both user lists are empty; no user ids will be rewritten."
    if not old:
        return "Old user list is empty; there are no users to map from."
    if not new:
        return "New user list is empty; there are no users to map to."
    return None


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve_identity_map(old: list[Identity], new: list[Identity]) -> dict[str, str]:
    """Map old user id -> new user id by exact name match.

    Later entries in ``new`` overwrite earlier ones with the same name.
    Old users with no namesake are left out of the result.
    """
    new_id_by_name: dict[str, str] = {}
    for user in new:
        new_id_by_name[user.name] = user.id

    mapping: dict[str, str] = {}
    for user in old:
        new_id = new_id_by_name.get(user.name)
        if new_id is None:
            log.info(
                "User %r (ID: %r) from old instance not found by name in new instance.",
                user.name, user.id,
            )
            continue
        mapping[user.id] = new_id
        log.info("Mapping user %r: old ID %r -> new ID %r", user.name, user.id, new_id)

    if not mapping:
        log.info("No users matched by name across instances; identity map is empty.")
    return mapping


def find_name_collisions(users: list[Identity]) -> dict[str, list[str]]:
    """Return names shared by more than one identity, with their ids in list order."""
    ids_by_name: dict[str, list[str]] = {}
    for user in users:
        ids_by_name.setdefault(user.name, []).append(user.id)
    return {name: ids for name, ids in ids_by_name.items() if len(ids) > 1}
