"""
Audit Orchestration Engine
Prompt Registry.

YAML-based prompt template management with:
    - Built-in default templates for every inference call site
    - Overrides loaded from the AUDIT_PROMPTS_DIR directory (*.yaml)
    - {{variable}} rendering
    - Version tracking

Usage:
    from audit_engine.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    messages = registry.render("finding_analysis",
                               title="Calibration overdue", severity="major",
                               category="equipment", description="...")
"""

import logging
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Variables are replaced using {{variable_name}} syntax. Unknown
        placeholders are left in place.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r'\{\{(\s*\w+\s*)\}\}', replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are registered first; YAML files in ``prompts_dir``
    replace a default when they share its name and version.
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_defaults()
        self._load_from_dir()

    def _load_defaults(self):
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)

    def _load_from_dir(self):
        """Load prompt templates from YAML files."""
        if not self._prompts_dir:
            return
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using defaults only.", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
                if not data or not isinstance(data, dict):
                    continue

                tpl = PromptTemplate(
                    name=data.get("name", yaml_file.stem),
                    version=str(data.get("version", "v1")),
                    system=data.get("system", ""),
                    user=data.get("user", ""),
                    description=data.get("description", ""),
                    metadata=data.get("metadata", {}),
                )
                self._register(tpl)
                logger.info("Loaded prompt template: %s (%s) from %s",
                            tpl.name, tpl.version, yaml_file.name)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)

    def _register(self, template: PromptTemplate):
        self._templates.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        """Get a prompt template by name and version."""
        return self._templates.get(name, {}).get(version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def list_templates(self) -> list[dict]:
        """List all registered templates."""
        return [
            tpl.to_dict()
            for versions in self._templates.values()
            for tpl in versions.values()
        ]

    def get_versions(self, name: str) -> list[str]:
        return list(self._templates.get(name, {}).keys())


# ── Built-in Default Templates ────────────────────────────────────────────────

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="risk_assessment",
        version="v1",
        description="Composite risk scoring over quality, process, supplier and compliance signals",
        system=(
            "You are a quality and compliance risk analyst for a manufacturing organization. "
            "You score operational risk from measured signals.\n\n"
            "Scoring rules:\n"
            "- Every score is a number between 0 (no risk) and 100 (maximum risk)\n"
            "- Score four dimensions: quality, process, supplier, compliance\n"
            "- The overall score reflects the dimension scores using these weights: {{weights}}\n"
            "- List the factors that drive the score, each with factor, score, weight, description\n"
            "- Suggest resources as {type, quantity, priority, rationale}\n\n"
            "Return ONLY a JSON object with keys: overallScore, qualityScore, processScore, "
            "supplierScore, complianceScore, factors, analysis, recommendations, suggestedResources."
        ),
        user=(
            "Perform a risk assessment.\n\n"
            "**Assessment type:** {{assessment_type}}\n"
            "**Entity:** {{entity}}\n"
            "**Period:** {{period}}\n"
            "**Data points analysed:** {{data_point_count}}\n\n"
            "Most recent data points:\n{{data_points}}"
        ),
    ),
    PromptTemplate(
        name="task_generation",
        version="v1",
        description="Derive audit tasks from the high-scoring factors of a scored assessment",
        system=(
            "You are an audit planner. Turn risk factors into concrete, schedulable audit tasks.\n\n"
            "Rules:\n"
            "- Propose at most {{max_tasks}} tasks\n"
            "- Only address factors whose score is at least {{min_risk_score}}\n"
            "- auditType is one of: quality, process, supplier, safety, compliance\n"
            "- priority is one of: critical, high, medium, low\n"
            "- riskScore is 0-100, aiConfidence is 0.0-1.0\n\n"
            "Return ONLY a JSON array of objects with keys: title, description, auditType, "
            "priority, riskScore, aiConfidence, aiReasoning."
        ),
        user=(
            "Propose audit tasks for scored assessment {{assessment_number}} "
            "(overall score {{overall_score}}).\n\n"
            "Qualifying risk factors:\n{{factors}}\n\n"
            "Analyst notes:\n{{analysis}}"
        ),
    ),
    PromptTemplate(
        name="finding_analysis",
        version="v1",
        description="Short root-cause analysis and 3-5 recommendations for a new finding",
        system=(
            "You are a senior quality auditor. Analyse audit findings and recommend corrective "
            "and preventive actions.\n\n"
            "Return ONLY a JSON object with keys:\n"
            "- analysis: two or three sentences on the probable root cause\n"
            "- recommendations: list of 3 to 5 short actionable recommendations"
        ),
        user=(
            "Analyse this audit finding:\n\n"
            "**Title:** {{title}}\n"
            "**Severity:** {{severity}}\n"
            "**Category:** {{category}}\n"
            "**Description:** {{description}}"
        ),
    ),
    PromptTemplate(
        name="compliance_copilot",
        version="v1",
        description="System preamble for the interactive compliance copilot",
        system=(
            "You are a compliance copilot for quality management systems (ISO 9001, IATF 16949, "
            "ISO 14001, ISO 45001 and organization-specific procedures).\n\n"
            "Key principles:\n"
            "- Ground answers in the knowledge excerpts you are given and name the document you rely on\n"
            "- Say clearly when the excerpts do not cover the question\n"
            "- Prefer concrete, auditable actions over general advice\n"
            "- Keep answers concise"
        ),
        user="",
    ),
    PromptTemplate(
        name="compliance_check",
        version="v1",
        description="Point-in-time compliance evaluation of an entity against standards",
        system=(
            "You are a compliance auditor. Evaluate an entity against the listed standards "
            "using the knowledge excerpts provided.\n\n"
            "Rules:\n"
            "- overallStatus is one of: compliant, non_compliant, partially_compliant\n"
            "- score is 0-100\n"
            "- results is a list of {requirement, status, evidence, gap}\n"
            "- actionItems is a list of {description, priority, status}\n\n"
            "Return ONLY a JSON object with keys: overallStatus, score, results, analysis, "
            "recommendations, requiresAction, actionItems."
        ),
        user=(
            "Run a compliance check.\n\n"
            "**Entity:** {{entity_type}} {{entity_id}}\n"
            "**Standards:** {{standards}}\n\n"
            "Knowledge excerpts:\n{{knowledge}}"
        ),
    ),
    PromptTemplate(
        name="kb_summary",
        version="v1",
        description="2-3 sentence summary of a knowledge document",
        system="You write precise, neutral summaries of compliance documents.",
        user="Summarize the following document in 2-3 sentences:\n\n{{content}}",
    ),
    PromptTemplate(
        name="react_thought",
        version="v1",
        description="ReAct thought step: what to investigate next",
        system=(
            "You are a quality engineer running a commonality study across defects, "
            "suppliers and processes. Think one step at a time."
        ),
        user=(
            "Generate thought for step {{step}}.\n\n"
            "Study type: {{study_type}}\n"
            "Filters: {{filters}}\n"
            "Findings so far: {{findings}}\n"
            "Patterns so far: {{patterns}}\n\n"
            "In one or two sentences, state what should be investigated next."
        ),
    ),
    PromptTemplate(
        name="react_action",
        version="v1",
        description="ReAct action selection from the closed action set",
        system=(
            "You choose the next investigative action for a commonality study.\n\n"
            "Allowed action types: ANALYZE_DEFECTS, COMPARE_SUPPLIERS, CHECK_PROCESS, "
            "FIND_ROOT_CAUSE, COMPLETE. Choose COMPLETE when the evidence is sufficient.\n\n"
            "Return ONLY a JSON object with keys: type, description, params."
        ),
        user=(
            "Determine action for step {{step}}.\n\n"
            "Thought: {{thought}}\n"
            "Study type: {{study_type}}\n"
            "Findings so far: {{findings}}"
        ),
    ),
    PromptTemplate(
        name="commonality_synthesis",
        version="v1",
        description="Condense the accumulated ReAct context into a study result",
        system=(
            "You condense an investigation transcript into a commonality study result.\n\n"
            "Return ONLY a JSON object with keys:\n"
            "- patterns: list of {pattern, frequency, affectedEntities, severity}\n"
            "- recommendations: list of strings\n"
            "- supplierInsights: list of {supplierId, riskLevel, issues, recommendation}\n"
            "- variantAnalysis: object or null"
        ),
        user=(
            "Produce the final analysis for this {{study_type}} study.\n\n"
            "Filters: {{filters}}\n"
            "Accumulated context:\n{{context}}"
        ),
    ),
]
