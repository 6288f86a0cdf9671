"""
Entry point for wani-offline.

Run with:
    python main.py [command]
"""
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from wani.cli.wani_cli import main

if __name__ == "__main__":
    main()
