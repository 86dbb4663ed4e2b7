# Models package
from flask_sqlalchemy import SQLAlchemy

# Create a single database instance for all models
db = SQLAlchemy()

# Import all models
from .company import Company
from .plant import Plant
from .product import ProductTemplate, ProductBatch, BatchComponent
from .partner import Partner
from .transfer import TokenTransfer
from .contract import Contract
