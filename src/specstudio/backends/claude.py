from __future__ import annotations

from specstudio.backends.base import CommandLineBackend


class ClaudeCodeBackend(CommandLineBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "-p", prompt]
        if self.model:
            command.extend(["--model", self.model])
        if self.write_access:
            command.append("--dangerously-skip-permissions")
        command.extend(self.extra_args)
        return command
