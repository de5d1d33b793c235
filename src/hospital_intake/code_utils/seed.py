from typing import Dict

from hospital_intake.code_utils.config import SETTINGS
from hospital_intake.code_utils.db import connect, create_doctor, create_hospital, init_db

# (name, state, city, address, pincode)
SAMPLE_HOSPITALS = [
    ("City General Hospital", "California", "Los Angeles", "123 Medical Center Blvd", "90001"),
    ("Golden State Medical Center", "California", "San Francisco", "456 Healthcare Ave", "94103"),
    ("Valley Healing Center", "California", "Sacramento", "789 Recovery Lane", "95814"),
    ("Empire State Hospital", "New York", "New York City", "789 Wellness Street", "10001"),
    ("Manhattan Medical", "New York", "New York City", "42 Health Plaza", "10016"),
    ("Lone Star Medical", "Texas", "Houston", "101 Treatment Lane", "77002"),
    ("Austin Healthcare Center", "Texas", "Austin", "555 Healing Road", "73301"),
    ("Sunshine State Hospital", "Florida", "Miami", "222 Palm Avenue", "33101"),
]

# Two doctors per specialty of the controlled vocabulary.
SAMPLE_DOCTORS = {
    "Cardiology": ["Dr. James Wilson", "Dr. Emily Chen"],
    "Neurology": ["Dr. Sarah Johnson", "Dr. Michael Lee"],
    "Orthopedics": ["Dr. David Smith", "Dr. Laura Kim"],
    "Pediatrics": ["Dr. Jessica Brown", "Dr. Robert Taylor"],
    "Dermatology": ["Dr. Angela Martinez", "Dr. Thomas Wong"],
    "Ophthalmology": ["Dr. Lisa Park", "Dr. Daniel Garcia"],
    "Psychiatry": ["Dr. Kevin Miller", "Dr. Rachel Cohen"],
    "Emergency Medicine": ["Dr. Christopher Rodriguez", "Dr. Jennifer White"],
    "General Medicine": ["Dr. John Davis", "Dr. Amanda Williams"],
}


def seed_directory(db_path: str = SETTINGS.db_path) -> Dict[str, int]:
    """
    Seed hospitals and doctors.

    What this script does:
    - Ensures DB + tables exist
    - Inserts each sample hospital unless one with the same name exists
    - Gives every hospital two doctors per specialty, skipping existing names

    Returns hospital name -> id.
    """
    init_db(db_path)
    hospital_ids: Dict[str, int] = {}
    with connect(db_path) as conn:
        for name, state, city, address, pincode in SAMPLE_HOSPITALS:
            row = conn.execute("SELECT id FROM hospitals WHERE name=?", (name,)).fetchone()
            if row:
                hospital_ids[name] = int(row["id"])
            else:
                hospital_ids[name] = create_hospital(conn, name, state, city, address, pincode)

        for hospital_id in hospital_ids.values():
            for specialty, names in SAMPLE_DOCTORS.items():
                for doctor_name in names:
                    exists = conn.execute(
                        "SELECT 1 FROM doctors WHERE name=? AND hospital_id=?",
                        (doctor_name, hospital_id),
                    ).fetchone()
                    if not exists:
                        create_doctor(conn, doctor_name, specialty, hospital_id)
    return hospital_ids


if __name__ == "__main__":
    seeded = seed_directory()
    print(f"Seeded {len(seeded)} hospitals into:", SETTINGS.db_path)
