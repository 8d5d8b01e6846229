import os
from dotenv import load_dotenv

from app.utils.env_helper import env_bool, env_list, env_none_or_str

load_dotenv()


SUPABASE_URL = os.getenv("PUBLIC_SUPABASE_URL")
SUPABASE_KEY = os.getenv("SECRET_API_KEY")
JWT_SIGN_KEY = os.getenv("SUPABASE_JWT_SECRET")

CORS_ORIGINS = env_list(
    "CORS_ORIGINS", default=["http://localhost:5173", "http://localhost:8080"]
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = env_bool("LOG_JSON", False)

# Shown in the inbox when a counterpart profile can't be resolved
UNKNOWN_USER_LABEL = env_none_or_str("UNKNOWN_USER_LABEL", "Unknown user")

REALTIME_SCHEMA = os.getenv("REALTIME_SCHEMA", "public")
