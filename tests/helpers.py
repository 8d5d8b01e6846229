import jwt

JWT_SECRET = "test-jwt-secret"
SUPABASE_URL = "https://example.supabase.co"

BUYER = "11111111-1111-1111-1111-111111111111"
SELLER = "22222222-2222-2222-2222-222222222222"
OTHER = "33333333-3333-3333-3333-333333333333"


def make_token(sub, **claims):
    payload = {"sub": sub, "iss": f"{SUPABASE_URL}/auth/v1", "email": f"{sub[:4]}@example.com"}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def auth_header(sub):
    return {"Authorization": f"Bearer {make_token(sub)}"}
