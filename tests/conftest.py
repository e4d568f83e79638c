import sys
import os
import pytest

# Add the project root directory to the python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


@pytest.fixture
def corpus_dir(tmp_path):
    """A data directory with two text files and one file that must be ignored."""
    (tmp_path / "b.txt").write_text("second file", encoding="utf-8")
    (tmp_path / "a.txt").write_text("first file", encoding="utf-8")
    (tmp_path / "c.md").write_text("markdown is not part of the corpus", encoding="utf-8")
    return tmp_path
