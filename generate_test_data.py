import random
import time

import requests

BASE_URL = "http://127.0.0.1:8000"

# Relative weights of learning events per simulated learner
EVENT_MIX = {
    "alice": {
        "lesson_completed": 6,
        "quiz_passed": 3,
        "quiz_perfect": 1,
        "review_completed": 2,
    },
    "peter": {
        "lesson_completed": 3,
        "quiz_passed": 5,
        "quiz_perfect": 3,
        "subject_completed": 1,
    },
    "marco": {
        "lesson_completed": 2,
        "daily_login": 4,
        "quiz_passed": 1,
    },
}

SUBJECTS = ["bpmn", "mathematics", "language_de_en", "language_zh_en"]


def test_connection():
    try:
        r = requests.get(BASE_URL, timeout=5)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def pick_event(user_id):
    weights = EVENT_MIX[user_id]
    kinds = list(weights.keys())
    return random.choices(kinds, weights=[weights[k] for k in kinds], k=1)[0]


def simulate_learner(user_id, iterations):
    success_count = 0
    for i in range(iterations):
        kind = pick_event(user_id)
        subject = random.choice(SUBJECTS)
        resp = requests.post(f"{BASE_URL}/progress/event", json={
            "user_id": user_id,
            "kind": kind,
            "detail": {"subject": subject, "step": i},
        }, timeout=5)
        if not resp.ok:
            print(f"[{user_id}] {kind} → Error: {resp.status_code}")
            continue

        success_count += 1
        data = resp.json()
        print(f"[{user_id}] {kind} on {subject} → {data['total_xp']} XP, level {data['level']['level']}")
        for achievement in data.get("achievements", []):
            print(f"   ★ {achievement['title']} (+{achievement['xp_gained']} XP)")

        time.sleep(0.1)

    print(f"{success_count} of {iterations} events recorded for {user_id}.")


def run_tests():
    if not test_connection():
        return

    total_events = 0
    iterations_per_user = 20

    for user in EVENT_MIX.keys():
        print(f"\nSimulating learner {user}")
        simulate_learner(user, iterations_per_user)
        total_events += iterations_per_user

    print(f"\nTotal events sent: {total_events}")

    r = requests.get(f"{BASE_URL}/progress/leaderboard?limit=10", timeout=5)
    if r.ok:
        for row in r.json():
            print(f"#{row['rank']} {row['user_id']}: {row['total_xp']} XP (level {row['level']})")
    else:
        print("Failed to get leaderboard")


if __name__ == "__main__":
    run_tests()
