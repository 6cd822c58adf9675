from locust import HttpUser, task, between
import os
import random
import uuid

ANOMALISA_HOST = os.getenv("ANOMALISA_HOST", "http://127.0.0.1:8000")
PROJECT_TOKEN = os.getenv("PROJECT_TOKEN", "dev-token")

# MODE:
#   baseline = steady traffic spread over many users
#   spike = a handful of users hammering one event (should raise userSpike)
MODE = os.getenv("MODE", "baseline").lower()

EVENT_NAMES = ["signup", "login", "pageview", "checkout"]


class EventSender(HttpUser):
    host = ANOMALISA_HOST
    wait_time = between(0.1, 0.3)

    def on_start(self):
        # stable identity per Locust user
        self.user_id = f"user-{uuid.uuid4().hex[:8]}"

    def _send(self, event_name: str, user_id: str, name: str):
        with self.client.post(
            "/events/",
            json={"token": PROJECT_TOKEN, "userId": user_id, "eventName": event_name},
            name=name,
            catch_response=True,
        ) as r:
            if r.status_code == 200:
                r.success()
            else:
                r.failure(f"unexpected status {r.status_code}: {r.text[:200]}")

    @task(8)
    def send_event(self):
        if MODE == "spike":
            self._send("checkout", "user-hot", "/events/ spike")
        else:
            self._send(random.choice(EVENT_NAMES), self.user_id, "/events/")

    @task(1)
    def read_counts(self):
        self.client.get("/events/counts", headers={"X-Project-Token": PROJECT_TOKEN}, name="/events/counts")

    @task(1)
    def read_anomalies(self):
        self.client.get("/anomalies/", headers={"X-Project-Token": PROJECT_TOKEN}, name="/anomalies/")
