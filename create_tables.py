#!/usr/bin/env python3
"""
Create the care intelligence tables without dropping existing ones.
Use alembic for schema changes on an existing database.
"""

from careintel.database import Base, engine
from careintel import models  # noqa: F401

print("Creating care intelligence tables...")

try:
    Base.metadata.create_all(bind=engine)
    print("Database tables created successfully!")
    print()
    print("The following tables are now available:")
    for table_name in Base.metadata.tables.keys():
        print(f"  - {table_name}")
except Exception as e:
    print(f"Error creating tables: {e}")
    raise
