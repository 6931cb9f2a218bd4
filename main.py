"""
Agent Session Broker - FastAPI Backend

Local control plane for human-consented browser automation.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e ".[browser]"

2. Configure:
   export AGENT_MODE=1
   export AGENT_JWS_SECRET="$(openssl rand -hex 32)"
   export AGENT_POLICY_PATH=policy.json

3. Run the app locally with uvicorn (loopback only):
   uvicorn main:app --host 127.0.0.1 --port 8765

4. Test /health endpoint:
   curl http://127.0.0.1:8765/health

5. Start a session and stream it:
   curl -X POST http://127.0.0.1:8765/start \
     -H "Authorization: Bearer user-1" -H "Content-Type: application/json" \
     -d '{"domain": "poshmark.com", "actions": ["open"], "requestedUrl": "https://poshmark.com/create-listing"}'
   curl -N http://127.0.0.1:8765/events/<session id> -H "Authorization: Bearer user-1"
"""
from agent_broker.app import create_app

app = create_app()
