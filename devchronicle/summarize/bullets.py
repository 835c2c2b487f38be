"""Bullet text normalization for day summaries."""

from __future__ import annotations

ALT_BULLET_PREFIXES = ("•", "*", "+")


def normalize_bullets(text: str) -> list[str]:
    """Turn model output into "- " bullets, one per non-empty line."""
    bullets: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("- "):
            bullets.append(line)
            continue
        if line.startswith(ALT_BULLET_PREFIXES) or line == "-":
            remainder = line[1:].strip()
            bullets.append(f"- {remainder}" if remainder else "- ")
            continue
        bullets.append(f"- {line}")
    return bullets


def cap_bullets(bullets: list[str], max_bullets: int) -> list[str]:
    return [b for b in bullets if b.strip() != "-"][:max_bullets]
