import os

from dotenv import load_dotenv

load_dotenv()

GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

RELAY_HOST = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.getenv("RELAY_PORT", "3000"))
RELAY_URL = os.getenv("RELAY_URL", "http://localhost:3000/api/gemini")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60"))

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CONVERSATION_NS = os.getenv("CONVERSATION_NS", "pageAnswer")
# seconds, for both connect and read
REDIS_TIMEOUT = float(os.getenv("REDIS_TIMEOUT", "0.5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
