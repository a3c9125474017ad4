from .db import Base, engine
from ..models import upload

def init_db(bind=None):
    # Import all models so SQLAlchemy knows them
    Base.metadata.create_all(bind=bind or engine)
