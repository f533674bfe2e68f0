from sqlalchemy.orm import declarative_base

# Declarative base shared by every audit table
Base = declarative_base()
