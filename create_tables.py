#!/usr/bin/env python3
"""
Create the access grant tables without dropping existing ones.
Local development only; deployed databases are migrated with Alembic.
"""

from medaccess.database import Base, engine
from medaccess.models import AccessToken, DoctorSession, AccessLog  # noqa: F401

print("Creating access grant tables...")

try:
    Base.metadata.create_all(bind=engine)
    print("✅ Database tables created successfully!")
    print()
    print("The following tables are now available:")
    for table_name in Base.metadata.tables.keys():
        print(f"  - {table_name}")
except Exception as e:
    print(f"❌ Error creating tables: {e}")
    raise
