"""Request texts sent to agents in each phase.

Every request names the agent role it addresses (``As <role>, ...``) and the
output format the parsers in ``issue_forge.engine.parsing`` understand.
"""

import json
from typing import Any

from issue_forge.models.domain import Component, DevelopmentPlan, Plan, Verdict

VERDICT_FORMAT = 'Return JSON: {"score": NUMBER 0-100, "issues": [STRING], "fixes": [STRING]}'


def _feedback(verdict: Verdict | None) -> str:
    if verdict is None:
        return ""
    lines = [f"The previous version scored {verdict.score}%. Address this feedback:"]
    lines.extend(f"- {issue}" for issue in verdict.issues)
    lines.extend(f"- Fix: {fix}" for fix in verdict.fixes)
    return "\n".join(lines) + "\n\n"


def planning_request(requirements: str, previous: str | None, verdict: Verdict | None) -> str:
    previous_text = f"Previous plan:\n\n{previous}\n\n" if previous else ""
    return f"""As project-analyzer, create a detailed implementation plan for:

{requirements}

{previous_text}{_feedback(verdict)}Include:
1. Technology stack with justification
2. Component breakdown
3. Success criteria

Use these Markdown sections, one `- role-id` bullet per agent:
## Researchers
## Developers
## Verifiers

End with a line `Complexity: simple|medium|complex|enterprise`.
"""


def plan_verification_request(plan_text: str, requirements: str) -> str:
    return f"""As verification-coordinator, analyze this plan for quality:

{plan_text}

Original requirements: {requirements}

Check for completeness, feasibility, clear actionable steps, no TODOs or
placeholders, and appropriate technology choices.

{VERDICT_FORMAT}
"""


def research_task(researcher_id: str, plan: Plan) -> str:
    return f"""As {researcher_id}, research based on this plan:

{json.dumps(plan.to_dict(), indent=2)}

{plan.raw}

Find best practices, code examples, and recommendations. Return your
findings as Markdown.
"""


def research_verification_request(research: dict[str, str]) -> str:
    return f"""As verification-coordinator, verify this research:

{json.dumps(research, indent=2)}

Check accuracy, completeness, contradictions and actionable insights.

Return JSON: {{"score": NUMBER 0-100, "issues": [STRING],
"improvements": [{{"researcher": RESEARCHER_ID, "suggestion": STRING}}]}}
"""


def dev_plan_request(
    plan: Plan,
    research: dict[str, str],
    previous: str | None,
    verdict: Verdict | None,
) -> str:
    previous_text = f"Previous development plan:\n\n{previous}\n\n" if previous else ""
    return f"""As project-analyzer, create a development plan based on research.

Original requirements: {plan.requirements_text}
Available developers: {", ".join(plan.developer_ids)}
Research findings: {json.dumps(research, indent=2)}

{previous_text}{_feedback(verdict)}Return JSON:
{{"components": [{{"name": STRING, "developer": DEVELOPER_ID,
"dependencies": [COMPONENT_NAME], "spec": STRING}}]}}

A component may only depend on components listed before it. Be specific
and actionable. No TODOs or placeholders.
"""


def dev_plan_verification_request(plan_text: str, requirements: str) -> str:
    return f"""As verification-coordinator, verify this development plan:

{plan_text}

Original requirements: {requirements}

Check for completeness, clarity and feasibility.

{VERDICT_FORMAT}
"""


def development_task(component: Component, dev_plan: DevelopmentPlan, branch: str) -> str:
    return f"""As {component.developer_id}, implement the component `{component.name}` on branch {branch}.

Dependencies: {json.dumps(list(component.dependencies))}
Specifications: {component.spec}

Full development plan:
{json.dumps(dev_plan.to_dict(), indent=2)}

Commit the code to the branch and reply with a summary of the files you
created or changed.
"""


def verifier_request(verifier_id: str, branch: str, requirements: str) -> str:
    return f"""As {verifier_id}, verify the code in branch {branch}.

Original requirements: {requirements}

Check all aspects relevant to your expertise.

{VERDICT_FORMAT}
"""


def fix_request(fixes: list[str], issues: list[str], branch: str) -> str:
    return f"""As verification-iterator, apply these fixes on branch {branch}:

{json.dumps(fixes, indent=2)}

Issues found:
{json.dumps(issues, indent=2)}

Fix all issues found, commit to the branch, and reply with a summary.
"""


def report_request(project_data: dict[str, Any]) -> str:
    return f"""As report-generator, create a comprehensive project report.

Project data: {json.dumps(project_data, indent=2)}

Include:
1. Executive summary
2. Requirements analysis
3. Technology choices
4. Development process (with iterations)
5. Quality metrics
6. Lessons learned

Format as professional Markdown documentation.
"""
