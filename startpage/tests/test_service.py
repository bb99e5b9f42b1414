import threading
import unittest
from dataclasses import replace

from startpage.db import InMemoryNodeStore, NodeKind, StoreError
from startpage.errors import (
    CircularReferenceError,
    ConflictError,
    DuplicateTitleError,
    InvalidParentError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from startpage.service import BookmarkService
from startpage.tree import count_tree

OWNER = "owner-1"
OTHER = "owner-2"


class FailingStore(InMemoryNodeStore):
    def find_by_owner(self, owner_id):
        raise StoreError("connection refused")

    def insert(self, owner_id, **kwargs):
        raise StoreError("connection refused")


class FailingDeleteManyStore(InMemoryNodeStore):
    def delete_many(self, owner_id, node_ids):
        raise StoreError("connection reset")


class FailingDeleteOneStore(InMemoryNodeStore):
    def delete_one(self, owner_id, node_id):
        raise StoreError("connection reset")


class BookmarkServiceTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryNodeStore()
        self.service = BookmarkService(self.store, max_tree_depth=100)

    def folder(self, title, parent_id=None, owner=OWNER):
        return self.service.create_node(
            owner, kind="folder", title=title, parent_id=parent_id
        )

    def link(self, title, parent_id=None, url="https://example.com", owner=OWNER):
        return self.service.create_node(
            owner, kind="link", title=title, parent_id=parent_id, url=url
        )

    def ancestors(self, node_id):
        seen = []
        current = self.service.get_node(OWNER, node_id).parent_id
        while current:
            self.assertNotIn(current, seen)
            seen.append(current)
            current = self.service.get_node(OWNER, current).parent_id
        return seen

    # create

    def test_create_folder_and_link(self):
        work = self.folder("Work")
        google = self.link("Google", work.id, url="https://google.com")
        self.assertEqual(work.kind, NodeKind.FOLDER)
        self.assertIsNone(work.parent_id)
        self.assertIsNone(work.url)
        self.assertEqual(google.parent_id, work.id)
        self.assertEqual(google.url, "https://google.com")
        self.assertEqual(google.version, 1)

    def test_create_strips_title(self):
        self.assertEqual(self.folder("  Work  ").title, "Work")

    def test_create_requires_kind_and_title(self):
        for kind, title in ((None, "x"), ("folder", None), ("folder", "   ")):
            with self.assertRaises(ValidationError):
                self.service.create_node(OWNER, kind=kind, title=title)
        with self.assertRaises(ValidationError):
            self.service.create_node(OWNER, kind="note", title="x")

    def test_link_requires_url(self):
        with self.assertRaises(ValidationError):
            self.service.create_node(OWNER, kind="link", title="Google")
        with self.assertRaises(ValidationError):
            self.link("Google", url="")
        with self.assertRaises(ValidationError):
            self.link("Google", url="ftp://google.com")

    def test_folder_rejects_url(self):
        with self.assertRaises(ValidationError):
            self.service.create_node(
                OWNER, kind="folder", title="Work", url="https://google.com"
            )

    def test_create_under_invalid_parent(self):
        link = self.link("Google")
        theirs = self.folder("Theirs", owner=OTHER)
        for parent_id in ("missing", link.id, theirs.id):
            with self.assertRaises(InvalidParentError):
                self.folder("Child", parent_id)

    def test_duplicate_title_among_siblings(self):
        self.folder("Work")
        with self.assertRaises(DuplicateTitleError):
            self.folder("Work")
        # Same title is fine elsewhere.
        home = self.folder("Home")
        self.folder("Work", home.id)
        self.folder("Work", owner=OTHER)

    # update

    def test_rename_and_change_url(self):
        link = self.link("Google")
        updated = self.service.update_node(
            OWNER, link.id, {"title": "Search", "url": "https://duckduckgo.com"}
        )
        self.assertEqual(updated.title, "Search")
        self.assertEqual(updated.url, "https://duckduckgo.com")
        self.assertEqual(updated.version, 2)

    def test_move_between_folders_and_to_root(self):
        work = self.folder("Work")
        home = self.folder("Home")
        link = self.link("Google", work.id)

        moved = self.service.update_node(OWNER, link.id, {"parent_id": home.id})
        self.assertEqual(moved.parent_id, home.id)
        moved = self.service.update_node(OWNER, link.id, {"parent_id": None})
        self.assertIsNone(moved.parent_id)

    def test_move_into_own_descendant_fails(self):
        f1 = self.folder("Work")
        f2 = self.folder("Sub", f1.id)
        with self.assertRaises(CircularReferenceError):
            self.service.update_node(OWNER, f1.id, {"parent_id": f2.id})
        self.assertIsNone(self.service.get_node(OWNER, f1.id).parent_id)

    def test_self_parent_fails(self):
        f1 = self.folder("Work")
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, f1.id, {"parent_id": f1.id})

    def test_move_to_current_parent_is_allowed(self):
        f1 = self.folder("Work")
        f2 = self.folder("Sub", f1.id)
        updated = self.service.update_node(OWNER, f2.id, {"parent_id": f1.id})
        self.assertEqual(updated.parent_id, f1.id)

    def test_move_to_invalid_parent(self):
        f1 = self.folder("Work")
        link = self.link("Google")
        with self.assertRaises(InvalidParentError):
            self.service.update_node(OWNER, f1.id, {"parent_id": link.id})

    def test_update_validation(self):
        folder = self.folder("Work")
        link = self.link("Google")
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, folder.id, {})
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, folder.id, {"url": "https://x.example"})
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, folder.id, {"url": None})
        with self.assertRaises(ValidationError):
            self.service.update_node(
                OWNER, folder.id, {"title": "Job", "url": None}
            )
        self.assertEqual(self.service.get_node(OWNER, folder.id).title, "Work")
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, folder.id, {"title": " "})
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, link.id, {"url": None})
        with self.assertRaises(ValidationError):
            self.service.update_node(OWNER, folder.id, {"kind": "link"})

    def test_update_missing_or_foreign_node(self):
        theirs = self.folder("Theirs", owner=OTHER)
        for node_id in ("missing", theirs.id):
            with self.assertRaises(NotFoundError):
                self.service.update_node(OWNER, node_id, {"title": "x"})

    def test_rename_to_sibling_title_fails(self):
        self.folder("Work")
        home = self.folder("Home")
        with self.assertRaises(DuplicateTitleError):
            self.service.update_node(OWNER, home.id, {"title": "Work"})

    def test_move_next_to_same_title_fails(self):
        work = self.folder("Work")
        self.link("Google", work.id)
        loose = self.link("Google")
        with self.assertRaises(DuplicateTitleError):
            self.service.update_node(OWNER, loose.id, {"parent_id": work.id})

    def test_expected_version_mismatch(self):
        folder = self.folder("Work")
        self.service.update_node(OWNER, folder.id, {"title": "Job"})
        with self.assertRaises(ConflictError):
            self.service.update_node(
                OWNER, folder.id, {"title": "Office"}, expected_version=1
            )
        updated = self.service.update_node(
            OWNER, folder.id, {"title": "Office"}, expected_version=2
        )
        self.assertEqual(updated.version, 3)

    def test_acyclicity_after_many_moves(self):
        folders = [self.folder(f"F{i}") for i in range(6)]
        moves = [(1, 0), (2, 1), (3, 2), (0, 3), (4, 3), (5, 4), (3, 5), (1, 5)]
        for child, parent in moves:
            try:
                self.service.update_node(
                    OWNER, folders[child].id, {"parent_id": folders[parent].id}
                )
            except CircularReferenceError:
                pass
        for folder in folders:
            self.ancestors(folder.id)

    # delete

    def test_cascading_delete(self):
        f1 = self.folder("Work")
        f2 = self.folder("Sub", f1.id)
        l1 = self.link("Google", f2.id)
        keep = self.link("Keep")

        self.assertEqual(self.service.delete_node(OWNER, f1.id), 3)
        for node_id in (f1.id, f2.id, l1.id):
            with self.assertRaises(NotFoundError):
                self.service.get_node(OWNER, node_id)
        self.assertEqual(self.service.get_node(OWNER, keep.id).id, keep.id)

    def test_delete_link_and_empty_folder(self):
        self.assertEqual(self.service.delete_node(OWNER, self.link("L").id), 1)
        self.assertEqual(self.service.delete_node(OWNER, self.folder("F").id), 1)

    def test_delete_missing_or_foreign(self):
        theirs = self.folder("Theirs", owner=OTHER)
        for node_id in ("missing", theirs.id):
            with self.assertRaises(NotFoundError):
                self.service.delete_node(OWNER, node_id)
        self.assertEqual(self.service.get_node(OTHER, theirs.id).id, theirs.id)

    # reads

    def test_list_filters(self):
        work = self.folder("Work")
        google = self.link("Google", work.id)
        loose = self.link("Loose")

        self.assertEqual(len(self.service.list_nodes(OWNER)), 3)
        self.assertEqual(
            [n.id for n in self.service.list_nodes(OWNER, root_only=True)],
            [work.id, loose.id],
        )
        self.assertEqual(
            [n.id for n in self.service.list_nodes(OWNER, parent_id=work.id)],
            [google.id],
        )
        self.assertEqual(self.service.list_nodes(OTHER), [])

    def test_get_tree(self):
        f1 = self.folder("F1")
        l2 = self.link("L2")
        f2 = self.folder("F2", f1.id)

        roots = self.service.get_tree(OWNER)
        self.assertEqual([r["id"] for r in roots], [f1.id, l2.id])
        self.assertEqual([c["id"] for c in roots[0]["children"]], [f2.id])
        self.assertEqual(roots[1]["children"], [])
        self.assertEqual(count_tree(roots), 3)

    def test_get_tree_sorted_by_title(self):
        self.folder("b")
        self.folder("A")
        roots = self.service.get_tree(OWNER, sort="title")
        self.assertEqual([r["title"] for r in roots], ["A", "b"])
        with self.assertRaises(ValidationError):
            self.service.get_tree(OWNER, sort="size")

    # orphans

    def test_prune_orphans(self):
        top = self.folder("Top")
        lost = self.folder("Lost", top.id)
        self.link("Inside", lost.id)
        self.store.nodes[lost.id] = replace(self.store.nodes[lost.id], parent_id="gone")

        self.assertEqual([n.id for n in self.service.find_orphans(OWNER)], [lost.id])
        self.assertEqual(self.service.prune_orphans(OWNER), 2)
        self.assertEqual(self.service.find_orphans(OWNER), [])
        self.assertEqual([n.id for n in self.service.list_nodes(OWNER)], [top.id])

    # store failures and locking

    def test_store_failures_surface_as_unavailable(self):
        service = BookmarkService(FailingStore())
        with self.assertLogs("startpage.service", level="ERROR"):
            with self.assertRaises(StoreUnavailableError):
                service.get_tree(OWNER)
        with self.assertLogs("startpage.service", level="ERROR"):
            with self.assertRaises(StoreUnavailableError):
                service.create_node(OWNER, kind="folder", title="Work")

    def test_failed_descendant_delete_keeps_subtree(self):
        store = FailingDeleteManyStore()
        service = BookmarkService(store)
        f1 = service.create_node(OWNER, kind="folder", title="Work")
        f2 = service.create_node(OWNER, kind="folder", title="Sub", parent_id=f1.id)

        with self.assertLogs("startpage.service", level="ERROR"):
            with self.assertRaises(StoreUnavailableError):
                service.delete_node(OWNER, f1.id)
        self.assertEqual(service.get_node(OWNER, f1.id).id, f1.id)
        self.assertEqual(service.get_node(OWNER, f2.id).parent_id, f1.id)

    def test_failed_folder_delete_leaves_no_orphans(self):
        store = FailingDeleteOneStore()
        service = BookmarkService(store)
        f1 = service.create_node(OWNER, kind="folder", title="Work")
        f2 = service.create_node(OWNER, kind="folder", title="Sub", parent_id=f1.id)
        service.create_node(
            OWNER, kind="link", title="Google", parent_id=f2.id, url="https://g.co"
        )

        with self.assertLogs("startpage.service", level="ERROR"):
            with self.assertRaises(StoreUnavailableError):
                service.delete_node(OWNER, f1.id)
        # Children go first, so the surviving folder is never left dangling.
        self.assertEqual(service.get_node(OWNER, f1.id).id, f1.id)
        self.assertEqual(service.find_orphans(OWNER), [])

    def test_owner_locks_are_released(self):
        for i in range(20):
            owner = f"owner-{i}"
            folder = self.folder("Work", owner=owner)
            self.service.update_node(owner, folder.id, {"title": "Job"})
            self.service.delete_node(owner, folder.id)
        self.assertEqual(len(self.store.owner_locks), 0)

    def test_concurrent_opposite_moves_keep_tree_acyclic(self):
        a = self.folder("A")
        b = self.folder("B")
        barrier = threading.Barrier(2)
        errors = []

        def move(child, parent):
            barrier.wait()
            try:
                self.service.update_node(OWNER, child, {"parent_id": parent})
            except CircularReferenceError as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=move, args=(a.id, b.id)),
            threading.Thread(target=move, args=(b.id, a.id)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(errors), 1)
        self.ancestors(a.id)
        self.ancestors(b.id)


if __name__ == "__main__":
    unittest.main()
