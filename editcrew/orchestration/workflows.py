"""
Known task templates used to pre-seed delegation.

Matching is a deterministic regex scan of the instruction. The result is
rendered into the coordinator prompt as guidance only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

REQUIRED = "required"
OPTIONAL = "optional"


@dataclass(frozen=True)
class WorkflowStep:
    agent: str
    focus: str
    priority: str = REQUIRED


@dataclass(frozen=True)
class Workflow:
    id: str
    name: str
    description: str
    triggers: tuple[re.Pattern[str], ...]
    steps: tuple[WorkflowStep, ...]
    guidance: str = ""

    def matches(self, instruction: str) -> bool:
        return any(trigger.search(instruction) for trigger in self.triggers)

    @property
    def required_agents(self) -> list[str]:
        return [step.agent for step in self.steps if step.priority == REQUIRED]


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


WORKFLOWS: tuple[Workflow, ...] = (
    Workflow(
        id="add-a-section",
        name="Add a section",
        description="New section file with schema, its styles, and optionally a template entry.",
        triggers=_patterns(
            r"add\s+(?:a\s+)?(?:new\s+)?section",
            r"create\s+(?:a\s+)?section",
            r"new\s+section\s+for",
        ),
        steps=(
            WorkflowStep("liquid", "Section file with schema settings and blocks"),
            WorkflowStep("css", "Section layout and styles"),
            WorkflowStep("json", "Register the section in a template", OPTIONAL),
        ),
        guidance="Liquid goes first so CSS can target its markup.",
    ),
    Workflow(
        id="redesign-header",
        name="Redesign the header",
        description="Header structure, styling and interactive behaviour.",
        triggers=_patterns(
            r"(?:redesign|update|change)\s+(?:the\s+)?header",
            r"header\s+redesign",
            r"mobile\s+menu|cart\s+drawer",
        ),
        steps=(
            WorkflowStep("liquid", "Header markup, navigation and schema"),
            WorkflowStep("css", "Header layout and responsive styles"),
            WorkflowStep("javascript", "Mobile menu toggle and cart drawer"),
        ),
        guidance="JavaScript must target the data attributes the Liquid markup defines.",
    ),
    Workflow(
        id="optimize-performance",
        name="Optimize performance",
        description="Loop limits and lazy loading in templates, critical CSS, deferred scripts.",
        triggers=_patterns(
            r"(?:optimi[sz]e|improve)\s+performance",
            r"speed\s+up\s+(?:the\s+)?(?:theme|site|store)",
            r"reduce\s+(?:page\s+)?load\s+time",
        ),
        steps=(
            WorkflowStep("liquid", "Loop limits, capture usage, lazy loading"),
            WorkflowStep("css", "Critical CSS and unused rule removal"),
            WorkflowStep("javascript", "Defer non-critical scripts", OPTIONAL),
        ),
    ),
    Workflow(
        id="add-product-feature",
        name="Add product feature",
        description="Product template markup, interactivity and settings.",
        triggers=_patterns(
            r"add\s+(?:a\s+)?product\s+feature",
            r"product\s+page\s+(?:feature|enhancement)",
            r"product\s+(?:interactivity|carousel|gallery)",
        ),
        steps=(
            WorkflowStep("liquid", "Product template markup and section schema"),
            WorkflowStep("javascript", "Variant switching, gallery, add-to-cart"),
            WorkflowStep("json", "Product section settings", OPTIONAL),
        ),
    ),
    Workflow(
        id="fix-mobile-layout",
        name="Fix mobile layout",
        description="Responsive layout fixes, occasionally with conditional markup.",
        triggers=_patterns(
            r"fix\s+mobile\s+layout",
            r"mobile\s+(?:layout|view)\s+(?:is\s+)?(?:broken|wrong|issue)",
            r"breaks?\s+on\s+mobile",
        ),
        steps=(
            WorkflowStep("css", "Breakpoints, flex/grid and viewport units"),
            WorkflowStep("liquid", "Conditional markup for small screens", OPTIONAL),
        ),
        guidance="Start with media queries; touch markup only if CSS cannot solve it.",
    ),
)


@dataclass
class WorkflowMatch:
    workflow: Workflow
    available_agents: set[str] = field(default_factory=set)

    @property
    def suggested_agents(self) -> list[str]:
        """Required steps first, then optional ones, limited to available specialists."""
        ordered = [step for step in self.workflow.steps if step.priority == REQUIRED]
        ordered += [step for step in self.workflow.steps if step.priority == OPTIONAL]
        return [step.agent for step in ordered if not self.available_agents or step.agent in self.available_agents]

    def hint(self) -> str:
        workflow = self.workflow
        lines = [f"Workflow: {workflow.name}", f"Description: {workflow.description}", "Steps:"]
        for step in workflow.steps:
            suffix = " (optional)" if step.priority == OPTIONAL else ""
            lines.append(f"- {step.agent}{suffix}: {step.focus}")
        if workflow.guidance:
            lines.append(f"Guidance: {workflow.guidance}")
        lines.append("This is a suggestion; deviate when the request needs something else.")
        return "\n".join(lines)


def match_workflows(
    instruction: str,
    available_agents: set[str] | None = None,
    workflows: tuple[Workflow, ...] = WORKFLOWS,
) -> list[WorkflowMatch]:
    text = instruction.strip()
    if not text:
        return []
    return [
        WorkflowMatch(workflow=workflow, available_agents=set(available_agents or ()))
        for workflow in workflows
        if workflow.matches(text)
    ]
