# scripts/mint_token.py
import argparse
import sys

from ticketgate.config import SECRET
from ticketgate.db import SessionLocal
from ticketgate.security import encode_ticket_token, payload_for
from ticketgate.store import SqlTicketStore


def main() -> None:
    parser = argparse.ArgumentParser(description="Print a fresh QR token for a stored ticket")
    parser.add_argument("--ticket-number", required=True)
    parser.add_argument("--compact", action="store_true", help="ticket number + verification id only")
    args = parser.parse_args()

    record = SqlTicketStore(SessionLocal).get(args.ticket_number)
    if record is None:
        sys.exit(f"ticket not found: {args.ticket_number}")

    token = encode_ticket_token(payload_for(record.identity, SECRET, compact=args.compact), SECRET)
    print(token)


if __name__ == "__main__":
    main()
