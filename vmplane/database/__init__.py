from . import models
from .database import Base, SessionLocal, engine
