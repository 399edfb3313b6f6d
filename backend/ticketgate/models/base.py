"""Declarative base shared by all models"""
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Ticket ids are stored in signed 64-bit BigInteger columns
MAX_TICKET_ID = 2 ** 63 - 1
