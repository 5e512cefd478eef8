import os

import requests

base_url = os.getenv("CHRONICLES_URL", "http://localhost:8000")
origin = os.getenv("CORS_PROBE_ORIGIN", "http://localhost:8080")
paths = ["/api/narrate", "/api/character-assistant", "/api/scene-image"]

for path in paths:
    url = f"{base_url}{path}"
    headers = {
        "Origin": origin,
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "authorization, content-type",
    }
    try:
        print(f"Sending OPTIONS to {url}...")
        resp = requests.options(url, headers=headers, timeout=10)
        print(f"Status: {resp.status_code}")
        print("Headers:")
        for k, v in resp.headers.items():
            if "access-control" in k.lower():
                print(f"  {k}: {v}")
        print()
    except requests.RequestException as e:
        print(f"Error: {e}")
