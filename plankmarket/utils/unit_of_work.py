from __future__ import annotations

from plankmarket.extensions import db


class UnitOfWork:
    """Transaction handle shared by ledger and state-machine operations.

    A root unit owns its transaction: leaving the ``with`` block commits, and
    an exception rolls back. A joined unit (see :func:`begin`) runs inside a
    caller's unit and leaves commit/rollback to that caller, so the same
    operation can run standalone or as one step of a larger transaction.
    """

    def __init__(self, session=None, *, owner: bool = True, parent: "UnitOfWork | None" = None):
        self.session = session if session is not None else db.session
        self.owner = bool(owner)
        self.root = parent.root if parent is not None else self
        self._after_completion = []

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.owner:
            return False
        try:
            if exc_type is None:
                try:
                    self.session.commit()
                except Exception:
                    self.session.rollback()
                    raise
            else:
                self.session.rollback()
        finally:
            callbacks, self._after_completion = self._after_completion, []
            for callback in callbacks:
                callback()
        return False

    def after_completion(self, callback) -> None:
        """Run ``callback`` once the root transaction has committed or rolled back."""
        self.root._after_completion.append(callback)

    def locked(self, model, ident):
        """Load one row under ``SELECT ... FOR UPDATE``."""
        return (
            self.session.query(model)
            .filter(model.id == ident)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def add(self, row) -> None:
        self.session.add(row)

    def flush(self) -> None:
        self.session.flush()


def begin(uow: UnitOfWork | None = None) -> UnitOfWork:
    if uow is None:
        return UnitOfWork()
    return UnitOfWork(uow.session, owner=False, parent=uow)
