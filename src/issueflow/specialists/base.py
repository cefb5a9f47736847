from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from issueflow.stages import Stage


class Specialist:
    """Builds executor stages for one role.

    ``brief`` is the built-in role description; a ``<role>.md`` file in
    ``prompt_dir`` replaces it.
    """

    role: str = "specialist"
    stage_name: str = "stage"
    schema: str = "stage"
    default_agent: str | None = None
    brief: str = "You are a software specialist."

    def __init__(
        self,
        *,
        agent: str | None = None,
        model: str | None = None,
        prompt_dir: Path | None = None,
    ) -> None:
        self.agent = agent or self.default_agent
        self.model = model
        self.system_prompt = self._load_brief(prompt_dir)

    def _load_brief(self, prompt_dir: Path | None) -> str:
        if prompt_dir is not None:
            candidate = prompt_dir / f"{self.role}.md"
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8").strip()
        return self.brief.strip()

    def render(self, instruction: str, context: dict[str, Any]) -> str:
        parts = [self.system_prompt, instruction.strip()]
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)

    def stage(
        self,
        instruction: str,
        context: dict[str, Any] | None = None,
        *,
        tag: str | None = None,
        agent: str | None = None,
        stage_name: str | None = None,
        schema: str | None = None,
    ) -> Stage:
        return Stage(
            name=stage_name or self.stage_name,
            instruction=self.render(instruction, context or {}),
            schema=schema or self.schema,
            agent=agent or self.agent,
            model=self.model,
            tag=tag,
        )
