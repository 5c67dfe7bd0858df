import os
import sys
from pathlib import Path

os.environ.setdefault("METER_TARIFF_PER_KWH", "1000")
os.environ.setdefault("METER_TIME_ACCEL", "1")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
