"""
academy package

Marks `academy` as a package so imports like

    from academy.main import app
    from academy.models import Order
    from academy.entitlements import check_access

work when running (from apps/backend):
    uvicorn academy.main:app

Do NOT put runtime logic here.
"""
