from __future__ import annotations

import unittest
from pathlib import Path

BOM = b"\xef\xbb\xbf"
TEXT_SUFFIXES = {".env", ".ini", ".json", ".md", ".py", ".toml", ".txt", ".yaml", ".yml"}
SKIP_DIRS = {".git", ".venv", "__pycache__", "logs", "data", "build", "dist"}


class RepoEncodingTests(unittest.TestCase):
    def test_repo_has_no_utf8_bom_prefixes(self) -> None:
        root = Path(__file__).resolve().parents[1]
        offenders = []
        for path in root.rglob("*"):
            if not path.is_file() or path.suffix.lower() not in TEXT_SUFFIXES:
                continue
            if any(part in SKIP_DIRS or part.endswith(".egg-info") for part in path.relative_to(root).parts):
                continue
            with open(path, "rb") as f:
                if f.read(3) == BOM:
                    offenders.append(str(path.relative_to(root)))
        if offenders:
            self.fail("UTF-8 BOM found in:\n" + "\n".join(sorted(offenders)))


if __name__ == "__main__":
    unittest.main()
