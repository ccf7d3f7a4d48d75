from app import app, db, LambingRecord, Sheep, register_sheep
from metrics import calculate_total, sex_distribution
from datetime import date, timedelta
import json
import random

ASSISTANCE = ['None', 'None', 'None', 'Minor', 'Major']

with app.app_context():
    rams = ['R100', 'R101', 'R102']
    for ram in rams:
        db.session.merge(Sheep(id=ram, is_ewe=False, is_ram=True))
    db.session.commit()

    # Lambing season: last 40 days
    created = 0
    for i in range(60):
        ewe_id = f"E{1000 + i}"
        if LambingRecord.query.filter_by(ewe_id=ewe_id).first():
            continue

        male = random.randint(0, 2)
        female = random.randint(0, 2)
        dead = random.choice([0, 0, 0, 1])

        lambs = []
        for sex, count in (('M', male), ('F', female)):
            for n in range(count):
                lambs.append({
                    'id': f"L{1000 + i}{sex}{n + 1}",
                    'weight': f"{random.uniform(3.0, 6.5):.1f}",
                    'sex': sex,
                })

        record = LambingRecord(
            date=date.today() - timedelta(days=random.randint(0, 40)),
            ewe_id=ewe_id,
            sire_id=random.choice(rams),
            male_lambs=male,
            female_lambs=female,
            deaths=dead,
            lambs_born=calculate_total(male, female, dead),
            scanned_count=random.randint(1, 3),
            sex_distribution=sex_distribution(male, female),
            assistance=random.choice(ASSISTANCE),
            id_mark=random.choice(['', 'Blue', 'Red', 'Notch']),
            comments='',
            lamb_ids=json.dumps(lambs),
        )
        db.session.add(record)
        register_sheep(record, lambs)
        created += 1

    db.session.commit()
    print(f"Seeded {created} lambing records.")
