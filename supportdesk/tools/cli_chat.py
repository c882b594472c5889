#!/usr/bin/env python3
import argparse, requests, sys, time

from supportdesk import settings


def post(base, path, payload):
    r = requests.post(f"{base}{path}", json=payload, timeout=180)
    if r.headers.get("content-type", "").startswith("application/json"):
        return r.status_code, r.json()
    return r.status_code, {"text": r.text}


def main():
    p = argparse.ArgumentParser(description="Terminal chat with a support-desk organisation assistant.")
    p.add_argument("--base", default=settings.APP_BASE_URL, help="API base URL")
    g = p.add_mutually_exclusive_group(required=True)
    g.add_argument("--org", help="Organisation id; starts a new web conversation")
    g.add_argument("--conversation", help="Continue an existing conversation id")
    p.add_argument("--as-user", action="store_true", help="Send as a human operator (interrupts the assistant)")
    args = p.parse_args()

    conversation_id = args.conversation
    creator = "USER" if args.as_user else "CONTACT"

    print("\nType your message and hit Enter. Ctrl+C to quit.\n")
    while True:
        try:
            text = input("[YOU] ").strip()
            if not text:
                continue
            if conversation_id:
                status, resp = post(args.base, "/chat",
                                    {"conversation_id": conversation_id, "message": text, "creator": creator})
                replies = resp if isinstance(resp, list) else []
            else:
                status, resp = post(args.base, "/chat",
                                    {"organisation_id": args.org, "message": text, "creator": creator})
                conversation_id = resp.get("conversation_id")
                replies = resp.get("messages") or []
                if conversation_id:
                    print(f"[server] conversation {conversation_id}")

            if status != 200:
                print(f"[server HTTP {status}] {resp.get('error') if isinstance(resp, dict) else resp}")
                continue
            if not replies:
                print("[BOT] (no reply; conversation is handled by a human)")
            for m in replies:
                print(f"[BOT] {m['message']}")
                for c in m.get("citations") or []:
                    if c.get("url"):
                        print(f"      ↳ {c['url']}")
        except KeyboardInterrupt:
            print("\nBye!")
            break
        except requests.RequestException as e:
            print(f"[network error] {e}")
            time.sleep(0.5)
    return 0


if __name__ == "__main__":
    sys.exit(main())
