import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from promptly.cache import prompts


class RenderTests(unittest.TestCase):
    def test_project_dir_is_replaced_everywhere(self) -> None:
        self.assertEqual(
            prompts.render("cd {{PROJECT_DIR}} && ls {{PROJECT_DIR}}", "/srv/app"),
            "cd /srv/app && ls /srv/app",
        )

    def test_claude_placeholder_removed_with_its_newline(self) -> None:
        template = "Intro\n{{CLAUDE_SPECIFIC_CONTENT}}\nOutro"
        self.assertEqual(prompts.render(template, "/srv/app"), "Intro\nOutro")

    def test_claude_content_is_inserted(self) -> None:
        template = "Intro\n{{CLAUDE_SPECIFIC_CONTENT}}\nOutro"
        self.assertEqual(prompts.render(template, "/srv/app", "Use agents"), "Intro\nUse agents\nOutro")


class LoadPromptTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.prompts_dir = root / "prompts"
        self.prompts_dir.mkdir()
        self.project_dir = root / "project"
        self.project_dir.mkdir()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_mode_selects_template(self) -> None:
        (self.prompts_dir / "system-prompt.md").write_text("enhance {{PROJECT_DIR}}", encoding="utf-8")
        (self.prompts_dir / "ask-prompt.md").write_text("ask {{PROJECT_DIR}}", encoding="utf-8")
        self.assertEqual(prompts.load_prompt(self.prompts_dir, "/p", "enhance"), "enhance /p")
        self.assertEqual(prompts.load_prompt(self.prompts_dir, "/p", "ask"), "ask /p")

    def test_claude_content_only_for_projects_with_claude_dir(self) -> None:
        (self.prompts_dir / "system-prompt.md").write_text("A\n{{CLAUDE_SPECIFIC_CONTENT}}\nB", encoding="utf-8")
        (self.prompts_dir / "claude-specific-prompt.md").write_text("CLAUDE", encoding="utf-8")
        project = str(self.project_dir)
        self.assertEqual(prompts.load_prompt(self.prompts_dir, project), "A\nB")
        (self.project_dir / ".claude").mkdir()
        self.assertEqual(prompts.load_prompt(self.prompts_dir, project), "A\nCLAUDE\nB")

    def test_missing_template_falls_back(self) -> None:
        with patch.object(prompts.config, "SYSTEM_PROMPT", "From env"):
            self.assertEqual(prompts.load_template(self.prompts_dir, "ask"), "From env")
        with patch.object(prompts.config, "SYSTEM_PROMPT", ""):
            self.assertEqual(prompts.load_template(self.prompts_dir, "ask"), "You are a helpful AI assistant.")


if __name__ == "__main__":
    unittest.main()
