import os

import requests

base_url = os.getenv("CHRONICLES_URL", "http://localhost:8000")
token = os.getenv("CHRONICLES_TOKEN")

print(f"Checking {base_url}/health...")
try:
    health_resp = requests.get(f"{base_url}/health", timeout=10)
    print(f"Health Status: {health_resp.status_code}")
    print(f"Health Body: {health_resp.text}")
except requests.RequestException as e:
    print(f"Health Check Error: {e}")

if not token:
    print("\nSet CHRONICLES_TOKEN to also check /api/me and the story list.")
    raise SystemExit(0)

headers = {
    "Authorization": f"Bearer {token}",
    "Content-Type": "application/json",
}

print(f"\nChecking session for token ...{token[-4:]} at {base_url}/api/me")
try:
    resp = requests.get(f"{base_url}/api/me", headers=headers, timeout=10)
    print(f"Status: {resp.status_code}")
    if resp.status_code == 200:
        data = resp.json()
        print(f"User ID: {data.get('id')}")
        print(f"Username: {data.get('username')}")
    else:
        print(f"Error: {resp.text}")

    resp = requests.get(f"{base_url}/api/stories", headers=headers, timeout=10)
    if resp.status_code == 200:
        stories = resp.json().get("stories", [])
        print(f"\nVisible stories: {len(stories)}")
        for story in stories[:10]:
            lock = " (password)" if story.get("has_password") else ""
            visibility = "public" if story.get("is_public") else "private"
            print(f"  - {story['title']} [{visibility}]{lock}")
except requests.RequestException as e:
    print(f"Request failed: {e}")
