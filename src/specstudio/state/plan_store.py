from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from specstudio.errors import PlanFormatError
from specstudio.models import DevelopmentPlan


class PlanStore:
    """JSON persistence for the workspace's DevelopmentPlan."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DevelopmentPlan:
        if not self.path.exists():
            raise PlanFormatError(f"No plan found at {self.path}")
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PlanFormatError(f"Plan file {self.path} is not valid JSON: {exc}") from exc
        return DevelopmentPlan.from_dict(payload)

    def save(self, plan: DevelopmentPlan) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(plan.to_dict(), ensure_ascii=False, indent=2) + "\n"
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(serialized)
            temp_name = handle.name
        try:
            os.replace(temp_name, self.path)
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise
