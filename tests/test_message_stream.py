import os
import tempfile
import unittest

from chatsync.media import UploadError
from chatsync.message_stream import MessageStreamSynchronizer
from chatsync.models import IMAGE_PREVIEW, Conversation, Message, MessageStatus
from chatsync.notifications import Notification
from chatsync.profiles import ProfileCache
from chatsync.store import InMemoryChatStore, StoreError
from chatsync.validators import ValidationError

from .sync_util import RecordingNotifier, seed_users


class StreamHarness:
    """A message stream plus the pieces a conversation list would hand it."""

    def __init__(self, store, user_id, *, uploader=None) -> None:
        self.notifier = RecordingNotifier()
        self.profiles = ProfileCache(store)
        self.stream = MessageStreamSynchronizer(
            store, self.notifier, self.profiles, uploader=uploader, now_func=self._tick
        )
        self.user_id = user_id
        self._clock = 1000

    def _tick(self):
        self._clock += 1
        return self._clock

    @property
    def idle(self):
        subscription = self.stream.subscription
        return subscription is None or subscription.idle

    async def wait_idle(self):
        await self.stream.wait_idle()


class FakeUploader:
    def __init__(self, *, fail=False) -> None:
        self.fail = fail
        self.uploads = []

    async def upload_chat_image(self, conv_id, path):
        if self.fail:
            raise UploadError("Upload failed with status: 500")
        self.uploads.append((conv_id, os.path.basename(str(path))))
        return f"https://res.cloudinary.com/demo/image/upload/chats/{conv_id}/photo.png"


class EchoCheckingStore(InMemoryChatStore):
    """Captures what the open stream shows while a write is in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.stream = None
        self.visible_during_add = None

    async def add_message(self, message):
        self.visible_during_add = [(m.text, m.status) for m in self.stream.messages]
        return await super().add_message(message)


class CountingStore(InMemoryChatStore):
    def __init__(self) -> None:
        super().__init__()
        self.status_writes = 0

    async def update_message_status(self, conv_id, msg_id, status):
        self.status_writes += 1
        await super().update_message_status(conv_id, msg_id, status)


class FailingSendStore(InMemoryChatStore):
    async def add_message(self, message):
        raise StoreError("quota exceeded")


async def _settle(*harnesses):
    for _ in range(20):
        for harness in harnesses:
            await harness.wait_idle()
        if all(harness.idle for harness in harnesses):
            return
    raise AssertionError("feeds did not settle")


class MessageStreamTestCase(unittest.IsolatedAsyncioTestCase):
    store_class = InMemoryChatStore

    async def asyncSetUp(self):
        self.store = self.store_class()
        await seed_users(self.store)
        await self.store.put_conversation(Conversation(conv_id="alice_bob", members=["alice", "bob"]))
        self.alice = StreamHarness(self.store, "alice")
        self.bob = StreamHarness(self.store, "bob")

    async def asyncTearDown(self):
        for harness in (self.alice, self.bob):
            subscription = harness.stream.subscription
            harness.stream.stop(silent=True)
            if subscription is not None:
                await subscription.wait_closed()

    async def _add(self, sender_id, text, time_ms, status=MessageStatus.SENT):
        return await self.store.add_message(
            Message(msg_id="", conv_id="alice_bob", sender_id=sender_id, text=text, time_ms=time_ms, status=status)
        )


class SeenTests(MessageStreamTestCase):
    async def test_other_authors_messages_become_seen(self):
        first = await self._add("alice", "one", 1)
        second = await self._add("alice", "two", 2, status=MessageStatus.DELIVERED)
        own = await self._add("bob", "mine", 3)

        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        statuses = {m.msg_id: m.status for m in await self.store.list_messages("alice_bob")}
        self.assertEqual(statuses[first.msg_id], MessageStatus.SEEN)
        self.assertEqual(statuses[second.msg_id], MessageStatus.SEEN)
        self.assertEqual(statuses[own.msg_id], MessageStatus.SENT)
        self.assertEqual([m.status for m in self.bob.stream.messages][:2], [MessageStatus.SEEN] * 2)

    async def test_messages_arriving_while_open_are_marked(self):
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        later = await self._add("alice", "later", 5)
        await _settle(self.bob)

        self.assertEqual((await self.store.list_messages("alice_bob"))[0].msg_id, later.msg_id)
        self.assertEqual((await self.store.list_messages("alice_bob"))[0].status, MessageStatus.SEEN)


class SeenWriteCountTests(MessageStreamTestCase):
    store_class = CountingStore

    async def test_each_unseen_message_is_written_once(self):
        for index in range(20):
            await self._add("alice", f"message {index}", index)

        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        self.assertEqual(self.store.status_writes, 20)
        statuses = {m.status for m in await self.store.list_messages("alice_bob")}
        self.assertEqual(statuses, {MessageStatus.SEEN})

        await self._add("alice", "one more", 30)
        await _settle(self.bob)

        self.assertEqual(self.store.status_writes, 21)


class ExclusivityTests(MessageStreamTestCase):
    async def test_start_cancels_previous_conversation(self):
        await self.store.put_conversation(Conversation(conv_id="bob_carol", members=["bob", "carol"]))
        self.bob.stream.start("alice_bob", "bob")
        first = self.bob.stream.subscription
        self.bob.stream.start("bob_carol", "bob")
        await _settle(self.bob)

        await self._add("alice", "elsewhere", 1)
        await _settle(self.bob)

        self.assertTrue(first.cancelled)
        self.assertEqual(self.bob.stream.conv_id, "bob_carol")
        self.assertEqual(self.bob.stream.messages, [])
        self.assertEqual((await self.store.list_messages("alice_bob"))[0].status, MessageStatus.SENT)


class NotificationTests(MessageStreamTestCase):
    async def test_opening_notifies_once_for_newest_message(self):
        await self.bob.profiles.get("alice")
        await self._add("alice", "first", 1)
        await self._add("alice", "earlier", 2)
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        # the seen writes republish the same count and stay quiet
        self.assertEqual(
            self.bob.notifier.shown, [Notification(title="Alice Anderson", body="earlier", payload="alice_bob")]
        )

    async def test_new_message_from_cached_author_notifies(self):
        await self.bob.profiles.get("alice")
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)
        self.assertEqual(self.bob.notifier.shown, [])

        await self._add("alice", "ping", 2)
        await _settle(self.bob)

        self.assertEqual(self.bob.notifier.shown, [Notification(title="Alice Anderson", body="ping", payload="alice_bob")])

    async def test_reopening_after_stop_notifies_again(self):
        await self.bob.profiles.get("alice")
        await self._add("alice", "hello", 1)
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)
        self.bob.stream.stop()

        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        self.assertEqual([n.body for n in self.bob.notifier.shown], ["hello", "hello"])

    async def test_opening_with_own_newest_message_stays_quiet(self):
        await self.bob.profiles.get("alice")
        await self._add("alice", "question", 1)
        await self._add("bob", "answer", 2)
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        self.assertEqual(self.bob.notifier.shown, [])

    async def test_uncached_author_is_skipped(self):
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        await self._add("alice", "ping", 2)
        await _settle(self.bob)

        self.assertEqual(self.bob.notifier.shown, [])
        self.assertEqual([m.text for m in self.bob.stream.messages], ["ping"])

    async def test_own_messages_do_not_notify(self):
        await self.alice.profiles.get("alice")
        self.alice.stream.start("alice_bob", "alice")
        await _settle(self.alice)

        await self.alice.stream.send_text("hello")
        await _settle(self.alice)

        self.assertEqual(self.alice.notifier.shown, [])


class SendTests(MessageStreamTestCase):
    async def test_blank_text_is_a_noop(self):
        self.alice.stream.start("alice_bob", "alice")

        self.assertFalse(await self.alice.stream.send_text("   "))
        self.assertFalse(await self.alice.stream.send_text(""))
        self.assertEqual(await self.store.list_messages("alice_bob"), [])

    async def test_no_open_conversation_is_a_noop(self):
        self.assertFalse(await self.alice.stream.send_text("hello"))

    async def test_too_long_text_raises(self):
        self.alice.stream.start("alice_bob", "alice")

        with self.assertRaises(ValidationError):
            await self.alice.stream.send_text("x" * 1001)

    async def test_sending_n_messages_adds_n_unread_for_other_member(self):
        self.alice.stream.start("alice_bob", "alice")
        for text in ("one", "two", "three"):
            self.assertTrue(await self.alice.stream.send_text(f"  {text} "))
        await _settle(self.alice)

        conversation = await self.store.get_conversation("alice_bob")
        messages = await self.store.list_messages("alice_bob")
        self.assertEqual(conversation.unread_for("bob"), 3)
        self.assertEqual(conversation.unread_for("alice"), 0)
        self.assertEqual(conversation.last_message, "three")
        self.assertEqual([m.text for m in messages], ["one", "two", "three"])
        self.assertTrue(all(m.status is MessageStatus.SENT for m in messages))
        self.assertFalse(self.alice.stream.is_sending)

    async def test_store_failure_sets_error_and_clears_placeholder(self):
        store = FailingSendStore()
        await store.put_conversation(Conversation(conv_id="alice_bob", members=["alice", "bob"]))
        harness = StreamHarness(store, "alice")
        harness.stream.start("alice_bob", "alice")

        self.assertFalse(await harness.stream.send_text("hello"))

        self.assertEqual(harness.stream.error_message, "Failed to send message: quota exceeded")
        self.assertEqual(harness.stream.messages, [])
        self.assertFalse(harness.stream.is_sending)
        harness.stream.stop(silent=True)


class OptimisticEchoTests(MessageStreamTestCase):
    store_class = EchoCheckingStore

    async def test_placeholder_visible_until_feed_confirms(self):
        self.store.stream = self.alice.stream
        self.alice.stream.start("alice_bob", "alice")
        await _settle(self.alice)

        await self.alice.stream.send_text("hi")
        self.assertEqual(self.store.visible_during_add, [("hi", MessageStatus.SENDING)])

        await _settle(self.alice)
        self.assertEqual([(m.text, m.status) for m in self.alice.stream.messages], [("hi", MessageStatus.SENT)])


class ImageTests(MessageStreamTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.image_path = os.path.join(self.tmpdir.name, "photo.png")
        with open(self.image_path, "wb") as handle:
            handle.write(b"\x89PNG\r\n\x1a\n" + b"0" * 64)

    async def asyncTearDown(self):
        await super().asyncTearDown()
        self.tmpdir.cleanup()

    async def test_send_image_uploads_then_appends(self):
        uploader = FakeUploader()
        harness = StreamHarness(self.store, "alice", uploader=uploader)
        harness.stream.start("alice_bob", "alice")

        self.assertTrue(await harness.stream.send_image(self.image_path, caption=" look "))
        await _settle(harness)
        harness.stream.stop(silent=True)

        messages = await self.store.list_messages("alice_bob")
        conversation = await self.store.get_conversation("alice_bob")
        self.assertEqual(uploader.uploads, [("alice_bob", "photo.png")])
        self.assertEqual(messages[0].text, "look")
        self.assertTrue(messages[0].image_url.endswith("/photo.png"))
        self.assertEqual(conversation.last_message, IMAGE_PREVIEW)
        self.assertEqual(conversation.unread_for("bob"), 1)

    async def test_upload_failure_sets_error(self):
        harness = StreamHarness(self.store, "alice", uploader=FakeUploader(fail=True))
        harness.stream.start("alice_bob", "alice")

        self.assertFalse(await harness.stream.send_image(self.image_path))
        harness.stream.stop(silent=True)

        self.assertIn("Upload failed", harness.stream.error_message)
        self.assertFalse(harness.stream.is_sending)
        self.assertEqual(await self.store.list_messages("alice_bob"), [])

    async def test_rejects_unsupported_file(self):
        harness = StreamHarness(self.store, "alice", uploader=FakeUploader())
        harness.stream.start("alice_bob", "alice")
        text_path = os.path.join(self.tmpdir.name, "notes.txt")
        with open(text_path, "w") as handle:
            handle.write("not an image")

        with self.assertRaises(ValidationError):
            await harness.stream.send_image(text_path)
        harness.stream.stop(silent=True)

    async def test_without_uploader_raises(self):
        self.alice.stream.start("alice_bob", "alice")

        with self.assertRaises(RuntimeError):
            await self.alice.stream.send_image(self.image_path)


class DeleteAndSearchTests(MessageStreamTestCase):
    async def test_delete_message_removes_it_from_feed(self):
        keep = await self._add("alice", "keep", 1)
        drop = await self._add("alice", "drop", 2)
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)

        self.assertTrue(await self.bob.stream.delete_message(drop.msg_id))
        await _settle(self.bob)

        self.assertEqual([m.msg_id for m in self.bob.stream.messages], [keep.msg_id])

    async def test_search_is_case_insensitive_and_newest_first(self):
        await self._add("alice", "Pizza tonight?", 1)
        await self._add("bob", "no, tacos", 2)
        await self._add("alice", "PIZZA is better", 3)
        self.bob.stream.start("alice_bob", "bob")
        await _settle(self.bob)
        before = list(self.bob.stream.messages)

        results = await self.bob.stream.search_in_conversation("pizza")

        self.assertEqual([m.text for m in results], ["PIZZA is better", "Pizza tonight?"])
        self.assertEqual(self.bob.stream.messages, before)

    async def test_search_without_open_conversation(self):
        self.assertEqual(await self.bob.stream.search_in_conversation("x"), [])


if __name__ == "__main__":
    unittest.main()
