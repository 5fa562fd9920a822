"""
FoodSpin application package.

  app/services/  business logic: validation, transformation, domain rules.

Services receive the ``database`` module in ``__init__`` and a SQLAlchemy
session per call.  ``foodspin_server.py`` creates one instance of each at
import time and route handlers call them directly, keeping the HTTP layer
separate from the domain (``foodspin.py``) and from storage (``database.py``).
"""
