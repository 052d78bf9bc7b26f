import tempfile
import unittest
from pathlib import Path

from promptly.cache.context_builder import ContextBuilder
from promptly.git.supervisor import ProcessSupervisor


class ContextBuilderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_sections_degrade_instead_of_failing(self) -> None:
        (self.root / "src").mkdir()
        (self.root / "node_modules" / "dep").mkdir(parents=True)
        (self.root / "package.json").write_text('{"name": "app"}', encoding="utf-8")
        (self.root / "README.md").write_text("x" * 1500, encoding="utf-8")
        supervisor = ProcessSupervisor()

        document = await ContextBuilder(supervisor).build(str(self.root))

        self.assertTrue(document.startswith("# PROJECT CONTEXT"))
        # Not a git repository: the listing is replaced by a note.
        self.assertIn("(Not available", document)
        self.assertIn("./src", document)
        self.assertNotIn("node_modules", document)
        self.assertIn('### package.json\n```\n{"name": "app"}', document)
        self.assertIn("x" * 1000 + "\n...(truncated)", document)
        self.assertNotIn("x" * 1001, document)
        self.assertNotIn("### tsconfig.json", document)
        self.assertEqual(supervisor.active_count, 0)


if __name__ == "__main__":
    unittest.main()
