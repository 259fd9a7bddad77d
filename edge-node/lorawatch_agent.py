import os
import time

import httpx
import numpy as np

INGEST_URL = os.environ.get("LORAWATCH_INGEST_URL", "http://localhost:8000/api/v1/ingest")
INTERVAL_SECONDS = float(os.environ.get("LORAWATCH_AGENT_INTERVAL", "20"))

# Node_2 stops transmitting after DROPOUT_AFTER cycles so the dashboard
# can be seen flipping it offline once the staleness threshold passes.
DROPOUT_AFTER = int(os.environ.get("LORAWATCH_AGENT_DROPOUT_AFTER", "10"))

NODES = [
    {"node_id": "Node_1", "lat": 52.5200, "lon": 13.4050, "battery": 98.0},
    {"node_id": "Node_2", "lat": 52.5163, "lon": 13.3777, "battery": 76.0},
]


def sample_payload(node, rng):
    node["battery"] = max(0.0, node["battery"] - rng.uniform(0.0, 0.05))
    return {
        "node_id": node["node_id"],
        "batteryPercentage": round(node["battery"], 1),
        "temperature": round(float(rng.normal(21.5, 0.8)), 2),
        "humidity": round(float(np.clip(rng.normal(48.0, 4.0), 0, 100)), 1),
        "airQualityPercentage": round(float(np.clip(rng.normal(82.0, 6.0), 0, 100)), 1),
        "rssi": int(rng.integers(-118, -70)),
        "snr": round(float(rng.normal(7.5, 2.0)), 1),
        "location": {"lat": node["lat"], "lon": node["lon"]},
        # Device clock; the tracker orders by the store's insertion time instead
        "timestamp": int(time.time()),
    }


def main():
    print(f"[*] lorawatch edge agent posting to {INGEST_URL} every {INTERVAL_SECONDS:g}s")
    rng = np.random.default_rng()
    cycle = 0
    with httpx.Client(timeout=10.0) as client:
        while True:
            cycle += 1
            for node in NODES:
                if node["node_id"] == "Node_2" and cycle > DROPOUT_AFTER:
                    continue
                try:
                    response = client.post(INGEST_URL, json=sample_payload(node, rng))
                    response.raise_for_status()
                    state = response.json().get("node") or {}
                    print(f"{node['node_id']}: row {response.json().get('row_id')} "
                          f"→ {'online' if state.get('online') else 'offline'}")
                except httpx.HTTPError as e:
                    print(f"Connection failed: {e}")
            if cycle == DROPOUT_AFTER:
                print("[!] Node_2 goes silent from now on")
            time.sleep(INTERVAL_SECONDS)


if __name__ == "__main__":
    main()
