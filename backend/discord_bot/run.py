"""Development entry point: ``python backend/discord_bot/run.py``"""

import asyncio
import sys
from pathlib import Path

# Make ``shared`` and ``discord_bot`` importable without installing
BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from discord_bot.bot import main  # noqa: E402

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
