import logging
import os

from dotenv import load_dotenv

load_dotenv()

# --- Storage ---
DB_PATH = os.getenv("BLEND_DB_PATH", "coal_blend.db")

# --- Web ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# --- Bunker simulation ---
TICK_SECONDS = float(os.getenv("TICK_SECONDS", "1.0"))
BUNKER_CAPACITY_T = float(os.getenv("BUNKER_CAPACITY_T", "500"))  # Tonnes per bunker

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
