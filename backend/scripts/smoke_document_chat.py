"""Live smoke test against a running server with real vision and LLM keys."""

import io
import os
import time
import uuid

import httpx
from PIL import Image, ImageDraw

# --- Render a passport-like test image ---

image = Image.new("RGB", (900, 560), "white")
draw = ImageDraw.Draw(image)
lines = [
    "FEDERAL REPUBLIC OF GERMANY",
    "PASSPORT / REISEPASS",
    "Surname: MUSTERMANN",
    "Given names: ERIKA",
    "Nationality: DEUTSCH",
    "Date of birth: 12.08.1983",
    "Passport No: C01X00T47",
    "Date of expiry: 31.10.2031",
]
for index, line in enumerate(lines):
    draw.text((40, 40 + index * 50), line, fill="black")
buffer = io.BytesIO()
image.save(buffer, format="PNG")
png_bytes = buffer.getvalue()

print("Test image rendered")

# --- API calls ---

base = os.environ.get("SMOKE_API_URL", "http://localhost:8000/api/v1")
agency_email = os.environ.get("FIRST_AGENCY_EMAIL", "agency@example.com")
agency_password = os.environ.get("FIRST_AGENCY_PASSWORD", "changethis")

email = f"smoke-{uuid.uuid4().hex[:6]}@test.com"
httpx.post(
    f"{base}/users/signup",
    json={"email": email, "password": "testpass123", "full_name": "Smoke Test User"},
    timeout=30,
).raise_for_status()
tok = httpx.post(
    f"{base}/login/access-token",
    data={"username": email, "password": "testpass123"},
    timeout=30,
).json()
headers = {"Authorization": f"Bearer {tok['access_token']}"}

agency_tok = httpx.post(
    f"{base}/auth/login",
    json={"email": agency_email, "password": agency_password},
    timeout=30,
).json()
agency_headers = {"Authorization": f"Bearer {agency_tok['access_token']}"}

upload = httpx.post(
    f"{base}/documents/",
    headers=headers,
    files={"file": ("passport.png", png_bytes, "image/png")},
    timeout=120,
)
print(f"Upload: {upload.status_code}")
upload.raise_for_status()
document = upload.json()
analysis = document["analysis_result"]
print(f"  Type: {analysis['documentType']} from {analysis['country']}")
print(f"  Status: {analysis['status']}")
for observation in analysis["observations"]:
    print(f"  - {observation}")

me = httpx.get(f"{base}/users/me", headers=headers, timeout=30).json()
progress = httpx.post(
    f"{base}/progress/{me['id']}", headers=agency_headers, timeout=30
).json()
print(f"Progress: {progress['status']} ({len(progress['steps'])} steps)")

conversation = httpx.get(f"{base}/chat/conversation", headers=headers, timeout=30).json()
conversation_id = conversation["id"]
httpx.post(
    f"{base}/chat/conversations/{conversation_id}/messages",
    headers=headers,
    json={"content": "Do I need to apostille my birth certificate?"},
    timeout=30,
).raise_for_status()

# The bot answers in the background; poll for its reply.
for _ in range(30):
    messages = httpx.get(
        f"{base}/chat/conversations/{conversation_id}/messages",
        headers=headers,
        timeout=30,
    ).json()["data"]
    if messages[-1]["sender_type"] != "user":
        break
    time.sleep(1)

for message in messages:
    print(f"  [{message['sender_type']}] {message['content']}")

print("Smoke test passed")
