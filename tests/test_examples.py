from pathlib import Path
import pytest
import subprocess
import sys

example_scripts = (Path(__file__).parent.parent / "examples").glob("*.py")


@pytest.mark.parametrize("script", example_scripts)
def test_example_script(script):
    subprocess.run([sys.executable, str(script)], check=True)
