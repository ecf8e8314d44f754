from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError

from bountypay.errors import ExternalServiceError
from bountypay.extensions import db


def compare_and_set(model, row_id: int, expected: dict, changes: dict) -> bool:
    """Apply ``changes`` to one row only if every column still matches ``expected``.

    A tuple/list/set value in ``expected`` means "any of these". The UPDATE is a
    single statement, so of two racing callers at most one sees True.
    """
    q = db.session.query(model).filter(model.id == int(row_id))
    for column, value in expected.items():
        attr = getattr(model, column)
        if isinstance(value, (tuple, list, set, frozenset)):
            q = q.filter(attr.in_(list(value)))
        elif value is None:
            q = q.filter(attr.is_(None))
        else:
            q = q.filter(attr == value)
    try:
        count = q.update(changes, synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise ExternalServiceError("database", "Conditional update failed") from e
    return count == 1
