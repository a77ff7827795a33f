"""Application configuration."""
import json
import math
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


class ConfigurationError(ValueError):
    """Raised when a curve or band table is malformed."""


# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("MARKET_ESTIMATOR_DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = DATA_DIR / "market_estimator.db"
CATEGORY_CURVES_FILE = DATA_DIR / "category_curves.json"
COGS_BANDS_FILE = DATA_DIR / "cogs_bands.json"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

# Amazon SP-API credentials (rank enrichment)
SP_API_REFRESH_TOKEN = os.getenv("SP_API_REFRESH_TOKEN", "")
SP_API_LWA_APP_ID = os.getenv("SP_API_LWA_APP_ID", "")
SP_API_LWA_CLIENT_SECRET = os.getenv("SP_API_LWA_CLIENT_SECRET", "")
SP_API_AWS_ACCESS_KEY = os.getenv("SP_API_AWS_ACCESS_KEY", "")
SP_API_AWS_SECRET_KEY = os.getenv("SP_API_AWS_SECRET_KEY", "")
SP_API_ROLE_ARN = os.getenv("SP_API_ROLE_ARN", "")

# Marketplace
DEFAULT_MARKETPLACE = os.getenv("DEFAULT_MARKETPLACE", "US")

# Estimation settings
MAX_PRODUCTS = int(os.getenv("MAX_PRODUCTS", "49"))
TIER1_BUDGET_SECONDS = float(os.getenv("TIER1_BUDGET_SECONDS", "10"))

# Calibration / retraining.  RETRAIN_MIN_ROWS doubles as the "medium"
# confidence threshold of the calibrated estimator.
RETRAIN_MIN_ROWS = int(os.getenv("RETRAIN_MIN_ROWS", "200"))
RETRAIN_WINDOW_ROWS = int(os.getenv("RETRAIN_WINDOW_ROWS", "1000"))
HIGH_CONFIDENCE_ROWS = 500
CALIBRATION_FACTOR_BOUNDS = (0.5, 2.0)

# Rank enrichment
ENRICHMENT_CACHE_TTL_DAYS = int(os.getenv("ENRICHMENT_CACHE_TTL_DAYS", "7"))
ENRICHMENT_MAX_CALLS = int(os.getenv("ENRICHMENT_MAX_CALLS", "20"))
TIER2_WORKERS = int(os.getenv("TIER2_WORKERS", "2"))


# BSR curves: category name (case-insensitive) -> (A, B) for units = A * rank^-B
_DEFAULT_CATEGORY_CURVES: dict[str, tuple[float, float]] = {
    "default": (41800.0, 0.66),
    "toys & games": (179600.0, 0.74),
    "home & kitchen": (79800.0, 0.65),
    "kitchen & dining": (61200.0, 0.621),
    "beauty & personal care": (125000.0, 0.699),
    "sports & outdoors": (45000.0, 0.588),
}

# COGS bands: sourcing model -> category bucket -> (low %, high %) of price
_DEFAULT_COGS_BANDS: dict[str, dict[str, tuple[float, float]]] = {
    "private_label": {
        "electronics": (30.0, 45.0),
        "home": (20.0, 30.0),
        "beauty": (15.0, 25.0),
        "default": (25.0, 35.0),
    },
    "wholesale_arbitrage": {"default": (55.0, 75.0)},
    "retail_arbitrage": {"default": (60.0, 80.0)},
    "dropshipping": {"default": (70.0, 85.0)},
    "unknown": {"default": (40.0, 65.0)},
}


def validate_category_curves(curves: dict) -> dict[str, tuple[float, float]]:
    """Normalise a curve table and reject anything unusable."""
    if not isinstance(curves, dict):
        raise ConfigurationError("category curves must be a mapping")
    table: dict[str, tuple[float, float]] = {}
    for name, pair in curves.items():
        try:
            a, b = (float(v) for v in pair)
        except (TypeError, ValueError):
            raise ConfigurationError(f"curve {name!r} must be a pair of numbers")
        if not (math.isfinite(a) and math.isfinite(b)) or a <= 0 or b <= 0:
            raise ConfigurationError(f"curve {name!r} needs positive finite A and B")
        table[str(name).strip().lower()] = (a, b)
    if "default" not in table:
        raise ConfigurationError("category curves must define a 'default' curve")
    return table


def validate_cogs_bands(bands: dict) -> dict[str, dict[str, tuple[float, float]]]:
    """Normalise a COGS band table and reject anything unusable."""
    if not isinstance(bands, dict):
        raise ConfigurationError("COGS bands must be a mapping")
    table: dict[str, dict[str, tuple[float, float]]] = {}
    for model, by_category in bands.items():
        if not isinstance(by_category, dict) or "default" not in by_category:
            raise ConfigurationError(f"sourcing model {model!r} needs a 'default' band")
        table[model] = {}
        for category, pair in by_category.items():
            try:
                low, high = (float(v) for v in pair)
            except (TypeError, ValueError):
                raise ConfigurationError(f"band {model}/{category} must be a pair of numbers")
            if not 0 <= low <= high <= 100:
                raise ConfigurationError(
                    f"band {model}/{category} must satisfy 0 <= low <= high <= 100"
                )
            table[model][category] = (low, high)
    if "unknown" not in table:
        raise ConfigurationError("COGS bands must define the 'unknown' sourcing model")
    return table


def _load_json_override(path: Path) -> dict | None:
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            saved = json.load(f)
    except OSError:
        return None
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path.name} is not valid JSON: {exc}")
    if not isinstance(saved, dict):
        raise ConfigurationError(f"{path.name} must contain a JSON object")
    return saved


def _load_category_curves() -> dict[str, tuple[float, float]]:
    """Load BSR curves from JSON file, merged over the defaults."""
    curves: dict = dict(_DEFAULT_CATEGORY_CURVES)
    saved = _load_json_override(CATEGORY_CURVES_FILE)
    if saved:
        curves.update(saved)
    return validate_category_curves(curves)


def _load_cogs_bands() -> dict[str, dict[str, tuple[float, float]]]:
    """Load COGS bands from JSON file, merged over the defaults."""
    bands: dict = {model: dict(rows) for model, rows in _DEFAULT_COGS_BANDS.items()}
    saved = _load_json_override(COGS_BANDS_FILE)
    if saved:
        for model, rows in saved.items():
            if isinstance(rows, dict):
                bands.setdefault(model, {}).update(rows)
            else:
                bands[model] = rows
    return validate_cogs_bands(bands)


CATEGORY_CURVES: dict[str, tuple[float, float]] = _load_category_curves()
COGS_BANDS: dict[str, dict[str, tuple[float, float]]] = _load_cogs_bands()
