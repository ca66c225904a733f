"""Branch naming for agent work.

This module is the single source of truth for the agent branch naming
convention other tooling depends on:

    {agent_prefix}{agent_id}/{ticket_number}-{slug}

e.g. ``agent1/42-fix-login``. The slug is a lowercased, hyphenated
truncation of the ticket title.
"""

import re
from typing import Optional

SLUG_MAX_LENGTH = 30

_BRANCH_RE = re.compile(r"^(?P<agent>[^/]+)/(?P<number>\d+)(?:-(?P<slug>.*))?$")


def slugify(title: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Create a slug from a ticket title.

    Keeps ASCII letters and digits, collapses runs of whitespace and dashes
    into single dashes, and truncates at a word boundary. A single word that
    is longer than ``max_length`` is cut at the character limit.

    Examples:
        "Fix Login!" -> "fix-login"
        "Add   dark -- mode" -> "add-dark-mode"

    Args:
        title: Ticket title
        max_length: Maximum slug length

    Returns:
        Slug (may be empty)
    """
    filtered = "".join(
        c for c in title.lower()
        if (c.isascii() and c.isalnum()) or c.isspace() or c == "-"
    )
    words = [w for w in re.split(r"[\s-]+", filtered) if w]
    normalized = "-".join(words)

    if len(normalized) <= max_length:
        return normalized

    if len(words) == 1:
        return normalized[:max_length]

    result = ""
    for word in words:
        candidate = f"{result}-{word}" if result else word
        if len(candidate) > max_length:
            break
        result = candidate

    # First word alone is too long
    if not result:
        result = words[0][:max_length]

    return result.rstrip("-")


def branch_name(agent_prefix: str, agent_id: str, ticket_number: int, title: str) -> str:
    """Build the deterministic branch name for an assignment.

    Args:
        agent_prefix: Configured agent prefix (e.g. "agent")
        agent_id: Agent identifier (e.g. "1")
        ticket_number: Ticket number
        title: Ticket title, used for the slug

    Returns:
        Branch name (e.g. "agent1/42-fix-login")
    """
    slug = slugify(title)
    if slug:
        return f"{agent_prefix}{agent_id}/{ticket_number}-{slug}"
    return f"{agent_prefix}{agent_id}/{ticket_number}"


def parse_branch(name: str, agent_prefix: str) -> Optional[tuple[str, int]]:
    """Parse an agent branch name.

    Handles both "agent1/42-description" and the legacy "agent1/42".

    Args:
        name: Branch name
        agent_prefix: Configured agent prefix

    Returns:
        Tuple of (agent_id, ticket_number), or None if the name does not
        follow the convention
    """
    match = _BRANCH_RE.match(name)
    if not match:
        return None

    agent = match.group("agent")
    if not agent.startswith(agent_prefix):
        return None
    agent_id = agent[len(agent_prefix):]
    if not agent_id:
        return None

    return agent_id, int(match.group("number"))
