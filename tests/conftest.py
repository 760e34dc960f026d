import os
import sys
from pathlib import Path

os.environ.setdefault("CHANGE_ADDRESS", "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx")
os.environ.setdefault("BITCOIND_URL", "http://localhost:38332")
os.environ.setdefault("BITCOIND_RPC_USER", "faucet")
os.environ.setdefault("BITCOIND_RPC_PASSWORD", "faucet")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
