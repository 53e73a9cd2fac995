import os
import sys

import yaml

# Add repository root to path so we can import models/db
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from database import SessionLocal, init_db  # noqa: E402
from errors import ConflictError  # noqa: E402
from utils.user_directory import UserDirectory  # noqa: E402


def load_demo_users(path: str = "") -> int:
    """Seed the demo directory from demo_users.yml; existing emails are skipped."""
    init_db()
    directory = UserDirectory(SessionLocal, require_verified_email=False)

    yml_path = path or os.path.join(os.path.dirname(__file__), "demo_users.yml")
    with open(yml_path, "r") as f:
        data = yaml.safe_load(f) or {}

    added = 0
    for u_data in data.get("users", []) or []:
        u_data = dict(u_data or {})
        password = u_data.pop("password", "")
        try:
            user = directory.signup(u_data, password)
        except ConflictError:
            print(f"User {u_data.get('email')} already exists. Skipping.")
            continue
        print(f"Added {user.user_type} {user.handle}")
        added += 1

    print(f"Demo data loaded ({added} new users).")
    return added


if __name__ == "__main__":
    load_demo_users(sys.argv[1] if len(sys.argv) > 1 else "")
