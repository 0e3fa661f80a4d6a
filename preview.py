from sqlmodel import create_engine
from llm_gateway.journal import list_log_records
from dotenv import load_dotenv
import os
import sys

load_dotenv()

DATABASE_URL = os.environ["DATABASE_URL"]

pg_engine = create_engine(DATABASE_URL)

def main():
    kind = sys.argv[1] if len(sys.argv) > 1 else None
    for record in list_log_records(pg_engine, limit=50, kind=kind):
        print(f"[{record['kind']}] {record['id']} @ {record['timestamp']}")
        print("  request: ", record["request_summary"][:200])
        print("  response:", record["response_summary"][:200])
        print("------------")

main()
