"""PromptResolver: pick the prompt template for a stage and substitute variables.

Template chain, first active match wins:

1. ``project-override`` for the project
2. ``project-default`` for the project (highest version is the selected one)
3. ``global-default``

With no template at all the caller's ``prompt`` variable is passed through
unchanged and a warning diagnostic is attached.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from genflow.errors import ResolutionError
from genflow.models import PromptSet, PromptTemplate
from genflow.store import PROMPT_TEMPLATES, DocumentStore

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

PASSTHROUGH = PromptSet(user_template="{prompt}", variables=["prompt"])


@dataclass
class PromptDiagnostic:
    variable: str
    severity: str  # error | warning
    message: str

    def to_dict(self) -> dict:
        return {"variable": self.variable, "severity": self.severity, "message": self.message}


@dataclass
class ResolvedPrompt:
    system_prompt: str
    user_prompt: str
    output_format: str = "text"
    template_id: str | None = None
    version: int | None = None
    source: str = "passthrough"
    diagnostics: list[PromptDiagnostic] = field(default_factory=list)

    @property
    def errors(self) -> list[PromptDiagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]

    def raise_for_errors(self):
        """Raise ResolutionError if any required variable was left unresolved."""
        errors = self.errors
        if errors:
            names = [d.variable for d in errors]
            raise ResolutionError(
                f"Prompt {self.template_id or '(passthrough)'} has unresolved required variables: {', '.join(names)}",
                missing=names,
                code="UNRESOLVED_VARIABLE",
            )

    def to_dict(self) -> dict:
        return {
            "systemPrompt": self.system_prompt,
            "userPrompt": self.user_prompt,
            "outputFormat": self.output_format,
            "templateId": self.template_id,
            "version": self.version,
            "source": self.source,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


def render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def substitute(template: str, variables: dict[str, Any]) -> tuple[str, list[str]]:
    """Replace ``{name}`` placeholders in one pass.

    Substituted values are never rescanned, so a value containing ``{x}`` stays
    literal. Returns the text and the placeholder names left unresolved, in
    order of first appearance. A None value counts as unresolved.
    """
    unresolved: list[str] = []

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            if name not in unresolved:
                unresolved.append(name)
            return match.group(0)
        return render_value(value)

    return PLACEHOLDER.sub(_replace, template or ""), unresolved


class PromptResolver:
    def __init__(self, store: DocumentStore):
        self.store = store

    def find_template(
        self, stage_type: str | None, capability: str, project_id: str | None = None
    ) -> tuple[PromptTemplate | None, str]:
        """Return (template, source) for the first chain step with an active match."""
        candidates = [
            PromptTemplate.from_dict(d)
            for d in self.store.list(PROMPT_TEMPLATES, stageType=stage_type)
        ]
        candidates = [t for t in candidates if t.is_active and capability in t.prompts]

        steps = []
        if project_id:
            steps.append(("project-override", project_id))
            steps.append(("project-default", project_id))
        steps.append(("global-default", None))

        for scope, owner in steps:
            matches = [t for t in candidates if t.scope == scope and t.project_id == owner]
            if matches:
                # Highest version wins; id breaks ties so the choice is stable.
                best = max(matches, key=lambda t: (t.version, t.id))
                return best, scope
        return None, "passthrough"

    def resolve(
        self,
        stage_type: str | None,
        capability: str,
        variables: dict[str, Any],
        project_id: str | None = None,
    ) -> ResolvedPrompt:
        template, source = self.find_template(stage_type, capability, project_id)
        diagnostics: list[PromptDiagnostic] = []

        if template is None:
            prompt_set = PASSTHROUGH
            diagnostics.append(PromptDiagnostic(
                variable="",
                severity="warning",
                message=f"No prompt template for stage '{stage_type}' / {capability}; passing input through",
            ))
            logger.warning(f"No prompt template for {stage_type}/{capability} (project={project_id})")
        else:
            prompt_set = template.prompts[capability]

        system_prompt, unresolved_system = substitute(prompt_set.system_prompt, variables)
        user_prompt, unresolved_user = substitute(prompt_set.user_template, variables)

        required = set(prompt_set.variables)
        seen: set[str] = set()
        for name in unresolved_system + unresolved_user:
            if name in seen:
                continue
            seen.add(name)
            severity = "error" if name in required else "warning"
            diagnostics.append(PromptDiagnostic(
                variable=name,
                severity=severity,
                message=f"Placeholder {{{name}}} has no value",
            ))
            if severity == "warning":
                logger.warning(f"Unresolved optional placeholder {{{name}}} in {stage_type}/{capability}")

        return ResolvedPrompt(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            output_format=prompt_set.output_format,
            template_id=template.id if template else None,
            version=template.version if template else None,
            source=source,
            diagnostics=diagnostics,
        )
