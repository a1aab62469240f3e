"""Parsing of free-text agent output into typed values.

This is the only place where agent text is interpreted. Each parser accepts
a JSON document (bare, or inside a ```json fence) and falls back to the
Markdown conventions agents are prompted with:

- Verdicts: ``SCORE: 87`` followed by ``- issue`` bullet lines.
- Plans: ``## Researchers`` / ``## Developers`` / ``## Verifiers`` bullet
  sections and a ``Complexity: medium`` line.
- Development plans: one ``### <component>`` section per component with
  ``Developer:`` and ``Dependencies:`` lines; remaining text is the spec.
"""

import json
import re
from typing import Any

import structlog

from issue_forge.exceptions import ParseError
from issue_forge.models.domain import Component, DevelopmentPlan, Improvement, Plan, Verdict, clamp_score

log = structlog.get_logger(__name__)

SCORE_PATTERN = re.compile(r"SCORE:\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)
FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
COMPLEXITY_PATTERN = re.compile(r"Complexity:\s*\**\s*([A-Za-z-]+)", re.IGNORECASE)
BULLET_PATTERN = re.compile(r"^[-*]\s+(.+)$")
COMPLEXITY_TIERS = ("simple", "medium", "complex", "enterprise")


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Find a JSON object in agent output.

    Tries a fenced block first, then the outermost braces. Returns None when
    nothing decodes to an object.
    """
    fenced = FENCED_JSON_PATTERN.search(text)
    if fenced:
        try:
            data = json.loads(fenced.group(1))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    json_start = text.find("{")
    json_end = text.rfind("}") + 1
    if json_start >= 0 and json_end > json_start:
        try:
            data = json.loads(text[json_start:json_end])
        except json.JSONDecodeError:
            return None
        if isinstance(data, dict):
            return data
    return None


def extract_section(text: str, section: str) -> str:
    """Return the body of a ``## <section>`` heading, or an empty string."""
    pattern = re.compile(rf"^##\s+{re.escape(section)}\s*$(.*?)(?=^##\s|\Z)", re.MULTILINE | re.DOTALL | re.IGNORECASE)
    match = pattern.search(text)
    return match.group(1).strip() if match else ""


def extract_list(text: str, section: str) -> list[str]:
    """Return the bullet items of a ``## <section>`` heading."""
    items = []
    for line in extract_section(text, section).splitlines():
        match = BULLET_PATTERN.match(line.strip())
        if match:
            item = match.group(1).strip().strip("`")
            if item:
                items.append(item)
    return items


def _bullets(text: str) -> list[str]:
    return [line.strip()[1:].strip() for line in text.splitlines() if line.strip().startswith("-")]


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


def parse_score(text: str) -> int:
    """Extract a ``SCORE: N`` value, clamped into 0..100.

    Raises:
        ParseError: If the text carries no score.
    """
    match = SCORE_PATTERN.search(text)
    if not match:
        raise ParseError("No SCORE found in verifier output")
    return clamp_score(match.group(1))


def parse_verdict(text: str) -> Verdict:
    """Parse verifier output into a Verdict.

    Output that carries no readable score degrades to a score of 0 with the
    raw text preserved; this function never raises.
    """
    data = extract_json_object(text)
    if data is not None and "score" in data:
        improvements = []
        for item in data.get("improvements") or []:
            if not isinstance(item, dict):
                continue
            unit = item.get("researcher") or item.get("unit") or item.get("component")
            suggestion = item.get("suggestion") or item.get("improvement")
            if unit and suggestion:
                improvements.append(Improvement(unit=str(unit), suggestion=str(suggestion)))
        return Verdict(
            score=data.get("score"),
            issues=_string_list(data.get("issues")),
            fixes=_string_list(data.get("fixes")),
            improvements=improvements,
            raw=text,
        )

    try:
        score = parse_score(text)
    except ParseError:
        log.warning("verdict_unparsable", preview=text[:200])
        return Verdict(score=0, raw=text)

    issues_text = extract_section(text, "Issues")
    fixes_text = extract_section(text, "Fixes")
    if issues_text or fixes_text:
        issues = _bullets(issues_text)
        fixes = _bullets(fixes_text)
    else:
        issues = _bullets(text)
        fixes = []
    return Verdict(score=score, issues=issues, fixes=fixes, raw=text)


def parse_plan(
    text: str,
    requirements_text: str,
    default_researchers: list[str],
    default_developers: list[str],
    default_verifiers: list[str],
) -> Plan:
    """Parse the planning agent's output into a Plan.

    Missing role lists fall back to the configured defaults; an unknown or
    missing complexity becomes ``medium``. Requirements always come from the
    session, never from the agent.
    """
    data = extract_json_object(text)
    if data is not None and any(k in data for k in ("researchers", "developers", "verifiers")):
        researchers = _string_list(data.get("researchers"))
        developers = _string_list(data.get("developers"))
        verifiers = _string_list(data.get("verifiers"))
        complexity = str(data.get("complexity") or "")
    else:
        researchers = extract_list(text, "Researchers")
        developers = extract_list(text, "Developers")
        verifiers = extract_list(text, "Verifiers")
        match = COMPLEXITY_PATTERN.search(text)
        complexity = match.group(1) if match else ""

    complexity = complexity.strip().lower()
    if complexity not in COMPLEXITY_TIERS:
        complexity = "medium"

    return Plan(
        requirements_text=requirements_text,
        researcher_ids=tuple(researchers or default_researchers),
        developer_ids=tuple(developers or default_developers),
        verifier_ids=tuple(verifiers or default_verifiers),
        complexity_tier=complexity,
        raw=text,
    )


def parse_dev_plan(text: str) -> DevelopmentPlan:
    """Parse the development plan agent's output and validate it.

    Raises:
        ParseError: If no component can be read from the text.
        PlanValidationError: If components violate the declaration-order
            invariant.
    """
    data = extract_json_object(text)
    components: list[Component] = []

    if data is not None and isinstance(data.get("components"), list):
        for item in data["components"]:
            if not isinstance(item, dict) or not item.get("name"):
                raise ParseError(f"Malformed component entry: {item!r}")
            developer = item.get("developer") or item.get("developerId") or item.get("developer_id")
            if not developer:
                raise ParseError(f"Component '{item['name']}' names no developer")
            components.append(
                Component(
                    name=str(item["name"]),
                    developer_id=str(developer),
                    dependencies=tuple(_string_list(item.get("dependencies"))),
                    spec=str(item.get("spec") or item.get("specifications") or ""),
                )
            )
    else:
        components = _parse_component_sections(text)

    if not components:
        raise ParseError("Development plan contains no components")

    plan = DevelopmentPlan(components=tuple(components), raw=text)
    plan.validate()
    return plan


def _parse_component_sections(text: str) -> list[Component]:
    components = []
    for block in re.split(r"^###\s+", text, flags=re.MULTILINE)[1:]:
        heading, _, body = block.partition("\n")
        name = heading.strip().strip("`")
        developer = ""
        dependencies: list[str] = []
        spec_lines = []
        for line in body.splitlines():
            key, sep, value = line.strip().lstrip("-* ").partition(":")
            key = key.strip("* ").lower()
            value = value.strip(" *`")
            if sep and key == "developer":
                developer = value
            elif sep and key == "dependencies":
                if value.lower() not in ("", "none", "-"):
                    dependencies = [d.strip().strip("`") for d in value.split(",") if d.strip()]
            else:
                spec_lines.append(line)
        if name and developer:
            components.append(
                Component(
                    name=name,
                    developer_id=developer,
                    dependencies=tuple(dependencies),
                    spec="\n".join(spec_lines).strip(),
                )
            )
    return components
