"""
Demo directory: business units, roles and the people holding them.

Consumed by scripts/seed_demo_workflow.py.

  usr-101  Requester            Operations
  usr-102  Department Manager   Operations
  usr-103  Finance Director     (organization-wide)
  usr-104  Procurement Officer  Operations
  usr-105  Procurement Officer  Operations
  usr-106  Procurement Manager  Operations
"""

BUSINESS_UNITS = ["Operations", "Finance"]

ROLES = [
    # (name, scope)
    ("Requester", "BU"),
    ("Department Manager", "BU"),
    ("Finance Director", "ORGANIZATION"),
    ("Procurement Officer", "BU"),
    ("Procurement Manager", "BU"),
]

# (user_id, role, business units)
PEOPLE = [
    ("usr-101", "Requester", ["Operations"]),
    ("usr-102", "Department Manager", ["Operations"]),
    ("usr-103", "Finance Director", ["Finance"]),
    ("usr-104", "Procurement Officer", ["Operations"]),
    ("usr-105", "Procurement Officer", ["Operations"]),
    ("usr-106", "Procurement Manager", ["Operations"]),
]
