import sys
import pathlib

# Ensure the project root is on sys.path so tests can import local packages
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
