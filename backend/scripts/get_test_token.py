"""Generate a JWT for calling the warehouse inventory API during development."""
from warehouse_sync.core.auth import create_access_token
import sys

if __name__ == "__main__":
    user_id = sys.argv[1] if len(sys.argv) > 1 else "warehouse_ops"
    token = create_access_token(user_id)
    print(token)
