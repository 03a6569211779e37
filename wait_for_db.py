import logging
import os
import time
from urllib.parse import urlparse

import psycopg2

logging.basicConfig(level=logging.INFO, format="[wait_for_db] %(message)s")
logger = logging.getLogger("wait_for_db")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise SystemExit("DATABASE_URL is not set")

# SQLAlchemy URL may start with postgresql+psycopg2:// (or postgres:// on Render)
url = DATABASE_URL.replace("postgresql+psycopg2://", "postgresql://").replace("postgres://", "postgresql://", 1)
p = urlparse(url)

host = p.hostname or "db"
port = p.port or 5432
user = p.username or "marketplace"
password = p.password or "marketplace"
dbname = (p.path or "/marketplace").lstrip("/") or "marketplace"

timeout_s = int(os.getenv("DB_WAIT_TIMEOUT", "60"))
start = time.time()

logger.info("waiting for Postgres at %s:%s db=%s user=%s (timeout=%ss)", host, port, dbname, user, timeout_s)
while True:
    try:
        conn = psycopg2.connect(host=host, port=port, user=user, password=password, dbname=dbname)
        conn.close()
        logger.info("Postgres is ready.")
        break
    except psycopg2.OperationalError as e:
        if time.time() - start > timeout_s:
            logger.error("timed out waiting for DB. Last error: %s", e)
            raise
        time.sleep(1)
