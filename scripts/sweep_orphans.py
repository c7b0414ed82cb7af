from bulk_seo.config import settings
from bulk_seo.db import init_db
from bulk_seo.ledger import sweep_orphaned_reservations
from bulk_seo.worker import recover_interrupted_jobs


def main() -> None:
    init_db()
    recovered = recover_interrupted_jobs()
    swept = sweep_orphaned_reservations(settings.reservation_timeout_sec)

    print(f"Interrupted jobs recovered: {recovered}")
    print(f"Orphaned reservations refunded: {swept}")


if __name__ == "__main__":
    main()
