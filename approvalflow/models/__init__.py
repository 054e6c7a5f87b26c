"""
Approval Flow — SQLAlchemy model package.

All model modules import the shared ``db`` handle from here:

    from approvalflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
