from __future__ import annotations

import unittest

from plankmarket.models import Listing
from plankmarket.utils.unit_of_work import UnitOfWork, begin
from tests.base import SettlementTestCase


class UnitOfWorkTestCase(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.listing_id = int(self.make_listing(self.make_seller()).id)

    def test_joined_unit_leaves_commit_to_root(self):
        seen = []
        with UnitOfWork() as root:
            with begin(root) as joined:
                joined.locked(Listing, self.listing_id).title = "Joined edit"
                joined.after_completion(lambda: seen.append("done"))
            self.assertEqual(seen, [])
        self.assertEqual(seen, ["done"])
        self.assertEqual(self.reload(Listing, self.listing_id).title, "Joined edit")

    def test_callbacks_run_after_rollback(self):
        seen = []
        with self.assertRaises(RuntimeError):
            with UnitOfWork() as root:
                root.locked(Listing, self.listing_id).title = "Discarded"
                with begin(root) as joined:
                    joined.after_completion(lambda: seen.append(self.reload(Listing, self.listing_id).title))
                raise RuntimeError("boom")
        self.assertEqual(len(seen), 1)
        self.assertNotEqual(seen[0], "Discarded")


if __name__ == "__main__":
    unittest.main()
