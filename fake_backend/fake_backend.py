"""
Local webhook sink for load runs: point a project's webhook_url at
http://127.0.0.1:8099/webhook and inspect what anomalisa delivered.

    uvicorn fake_backend.fake_backend:app --port 8099
"""
from collections import deque
from typing import Any, Dict

from fastapi import FastAPI, Request

app = FastAPI()

_received: deque = deque(maxlen=1000)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/webhook")
async def webhook(request: Request):
    payload: Dict[str, Any] = await request.json()
    _received.append(payload)
    return {"ok": True}


@app.get("/received")
def received():
    return {"count": len(_received), "anomalies": list(_received)}
