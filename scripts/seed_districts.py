import os
import sys
from datetime import datetime

from dotenv import load_dotenv

from init_db import get_db_connection


# Bangladesh's 64 districts grouped by division
DISTRICTS = [
    "Barisal", "Barguna", "Bhola", "Jhalokati", "Patuakhali", "Pirojpur",
    "Bandarban", "Brahmanbaria", "Chandpur", "Chittagong", "Comilla", "Cox's Bazar",
    "Feni", "Khagrachhari", "Lakshmipur", "Noakhali", "Rangamati",
    "Dhaka", "Faridpur", "Gazipur", "Gopalganj", "Kishoreganj", "Madaripur",
    "Manikganj", "Munshiganj", "Narayanganj", "Narsingdi", "Rajbari", "Shariatpur", "Tangail",
    "Bagerhat", "Chuadanga", "Jessore", "Jhenaidah", "Khulna", "Kushtia",
    "Magura", "Meherpur", "Narail", "Satkhira",
    "Jamalpur", "Mymensingh", "Netrakona", "Sherpur",
    "Bogra", "Joypurhat", "Naogaon", "Natore", "Nawabganj", "Pabna",
    "Rajshahi", "Sirajganj",
    "Dinajpur", "Gaibandha", "Kurigram", "Lalmonirhat", "Nilphamari",
    "Panchagarh", "Rangpur", "Thakurgaon",
    "Habiganj", "Moulvibazar", "Sunamganj", "Sylhet",
]

INSIDE_DHAKA = {"Dhaka"}
INSIDE_DHAKA_CHARGE = int(os.getenv("INSIDE_DHAKA_CHARGE", "60"))
OUTSIDE_DHAKA_CHARGE = int(os.getenv("OUTSIDE_DHAKA_CHARGE", "120"))


def delivery_charge_for(name: str) -> int:
    return INSIDE_DHAKA_CHARGE if name in INSIDE_DHAKA else OUTSIDE_DHAKA_CHARGE


def seed(conn) -> int:
    inserted = 0
    now = datetime.now().replace(microsecond=0)
    with conn.cursor() as cur:
        for name in DISTRICTS:
            cur.execute("SELECT 1 FROM districts WHERE LOWER(name) = LOWER(%s)", (name,))
            if cur.fetchone():
                continue
            cur.execute(
                "INSERT INTO districts (name, delivery_charge, is_active, created_at) VALUES (%s, %s, 1, %s)",
                (name, delivery_charge_for(name), now),
            )
            inserted += 1
    conn.commit()
    return inserted


def main():
    load_dotenv()
    conn = get_db_connection()
    try:
        inserted = seed(conn)
    finally:
        conn.close()
    print(f"Inserted {inserted} district(s); {len(DISTRICTS) - inserted} already present.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
