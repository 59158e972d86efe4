from __future__ import annotations

from specstudio.backends.base import CommandLineBackend


class CodexBackend(CommandLineBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "exec"]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        if self.write_access:
            command.append("--full-auto")
        command.extend(self.extra_args)
        command.append(prompt)
        return command
