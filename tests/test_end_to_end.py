import unittest

from chatsync.conversation_list import ConversationListSynchronizer
from chatsync.models import MessageStatus
from chatsync.notifications import Notification
from chatsync.resolver import conversation_id
from chatsync.sqlite_backend import SQLiteBackend
from chatsync.sqlite_store import SQLiteChatStore
from chatsync.store import InMemoryChatStore

from .sync_util import RecordingNotifier, seed_users, settle


class AliceAndBobScenario:
    def make_store(self):
        raise NotImplementedError

    async def asyncSetUp(self):
        self.store = self.make_store()
        await seed_users(self.store)
        self.alice_notifier = RecordingNotifier()
        self.bob_notifier = RecordingNotifier()
        self.alice = ConversationListSynchronizer(self.store, self.alice_notifier)
        self.bob = ConversationListSynchronizer(self.store, self.bob_notifier)

    async def asyncTearDown(self):
        await self.alice.aclose()
        await self.bob.aclose()

    async def test_first_contact_notification_and_read_receipt(self):
        self.assertEqual(conversation_id("alice", "bob"), "alice_bob")
        self.alice.start("alice")
        self.bob.start("bob")
        await settle(self.alice, self.bob)

        conversation = await self.alice.open_conversation("bob")
        self.assertEqual(conversation.conv_id, "alice_bob")
        self.assertEqual(conversation.last_message, "")
        self.assertEqual(conversation.unread, {})

        self.assertTrue(await self.alice.messages.send_text("hi"))
        await settle(self.alice, self.bob)

        stored = await self.store.get_conversation("alice_bob")
        self.assertEqual(stored.last_message, "hi")
        self.assertEqual(stored.unread_for("bob"), 1)
        self.assertEqual(self.bob.total_unread_count, 1)
        self.assertEqual(
            self.bob_notifier.shown,
            [Notification(title="Alice Anderson", body="hi", payload="alice_bob")],
        )
        self.assertEqual(self.alice_notifier.shown, [])

        await self.bob.open_conversation("alice")
        await settle(self.alice, self.bob)

        stored = await self.store.get_conversation("alice_bob")
        messages = await self.store.list_messages("alice_bob")
        self.assertEqual(stored.unread_for("bob"), 0)
        self.assertEqual([(m.text, m.status) for m in messages], [("hi", MessageStatus.SEEN)])
        self.assertEqual(self.bob.total_unread_count, 0)
        # opening the stream shows alice's newest message once more
        self.assertEqual([n.body for n in self.bob_notifier.shown], ["hi", "hi"])
        self.assertEqual([m.status for m in self.alice.messages.messages], [MessageStatus.SEEN])

    async def test_reply_while_both_open_notifies_through_message_stream(self):
        self.alice.start("alice")
        self.bob.start("bob")
        await self.alice.open_conversation("bob")
        await self.bob.open_conversation("alice")
        await settle(self.alice, self.bob)

        await self.bob.messages.send_text("hey alice")
        await settle(self.alice, self.bob)

        bodies = [n.body for n in self.alice_notifier.shown]
        # one from the list edge, one from the open stream
        self.assertEqual(bodies, ["hey alice", "hey alice"])
        self.assertEqual(
            [m.status for m in await self.store.list_messages("alice_bob")],
            [MessageStatus.SEEN],
        )


class InMemoryScenarioTests(AliceAndBobScenario, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        return InMemoryChatStore()


class SQLiteScenarioTests(AliceAndBobScenario, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        self.backend = SQLiteBackend(":memory:")
        return SQLiteChatStore(self.backend)

    async def asyncTearDown(self):
        await super().asyncTearDown()
        self.backend.close()


if __name__ == "__main__":
    unittest.main()
