"""Reply routing and command ordering, driven by hand-fed replies."""

import asyncio

import pytest

from qftp.core.command import Phase
from qftp.core.errors import ConnectionClosedError, FtpError, FtpReplyError, TransferAbortedError


class StubData:
    """Data channel whose payload is completed by the test."""

    def __init__(self):
        self.payload = asyncio.get_running_loop().create_future()
        self.waiters = 0

    def received(self):
        self.waiters += 1
        return self.payload


class TestCommandOrdering:
    @pytest.mark.asyncio
    async def test_next_command_waits_for_previous_reply_cycle(self, offline_client, control):
        first = offline_client.commands.submit("MKD a")
        second = offline_client.commands.submit("MKD b")
        assert control.sent == ["MKD a"]

        control.reply('257 "/a" created\r\n')
        assert await first.future == "/a"
        assert control.sent == ["MKD a", "MKD b"]

        control.reply('257 "/b" created\r\n')
        assert await second.future == "/b"
        assert not offline_client.commands.processing

    @pytest.mark.asyncio
    async def test_error_reply_fails_command_and_queue_advances(self, offline_client, control):
        first = offline_client.commands.submit("DELE missing.txt")
        second = offline_client.commands.submit("NOOP")

        control.reply("550 File not found\r\n")
        with pytest.raises(FtpReplyError) as exc_info:
            await first.future
        assert exc_info.value.code == "550"
        assert control.sent == ["DELE missing.txt", "NOOP"]

        control.reply("200 NOOP ok\r\n")
        assert await second.future == "NOOP ok"

    @pytest.mark.asyncio
    async def test_run_now_skips_the_backlog(self, offline_client, control):
        offline_client.commands.submit("NOOP")
        offline_client.commands.submit("SYST")
        urgent = offline_client.commands.submit("ABOR", run_now=True)
        assert control.sent == ["NOOP", "ABOR"]

        control.reply("200 NOOP ok\r\n")
        assert control.sent == ["NOOP", "ABOR", "SYST"]
        control.reply("225 ABOR command successful\r\n")
        assert await urgent.future == "ABOR command successful"

    @pytest.mark.asyncio
    async def test_prepend_puts_command_at_head_of_backlog(self, offline_client, control):
        offline_client.commands.submit("NOOP")
        offline_client.commands.submit("SYST")
        offline_client.commands.submit("PWD", prepend=True)

        control.reply("200 NOOP ok\r\n")
        assert control.sent == ["NOOP", "PWD"]

    @pytest.mark.asyncio
    async def test_reply_split_across_chunks(self, offline_client, control):
        command = offline_client.commands.submit("PWD")
        control.reply('257 "/pub/inc')
        assert not command.future.done()
        control.reply('oming" is the current directory\r\n')
        assert await command.future == "/pub/incoming"

    @pytest.mark.asyncio
    async def test_each_command_is_answered_once(self, offline_client, control):
        command = offline_client.commands.submit("NOOP")
        control.reply("200 NOOP ok\r\n200 NOOP ok\r\n")
        assert await command.future == "NOOP ok"
        assert command.done


class TestChain:
    @pytest.mark.asyncio
    async def test_second_command_runs_before_later_ones(self, offline_client, control):
        first, second = offline_client.commands.submit_chain("RNFR a.txt", "RNTO b.txt")
        later = offline_client.commands.submit("NOOP")

        control.reply("350 Ready for destination name\r\n")
        assert control.sent == ["RNFR a.txt", "RNTO b.txt"]
        control.reply("250 Rename successful\r\n")
        assert await second.future == "Rename successful"
        assert control.sent[-1] == "NOOP"
        assert not later.future.done()

    @pytest.mark.asyncio
    async def test_failed_first_command_cancels_second(self, offline_client, control):
        first, second = offline_client.commands.submit_chain("RNFR a.txt", "RNTO b.txt")
        control.reply("550 File not found\r\n")
        with pytest.raises(FtpReplyError):
            await first.future
        assert second.future.cancelled()
        assert control.sent == ["RNFR a.txt"]


class TestMultiStageReplies:
    @pytest.mark.asyncio
    async def test_download_resolves_with_payload(self, offline_client, control):
        offline_client.data = StubData()
        retr = offline_client.commands.submit("RETR file.txt")
        after = offline_client.commands.submit("NOOP")

        control.reply("150 Opening data connection for file.txt\r\n")
        assert retr.phase is Phase.TRANSFERRING
        offline_client.data.payload.set_result(b"hello")
        assert await retr.future == b"hello"

        # The slot is held until the terminal reply
        assert control.sent == ["RETR file.txt"]
        control.reply("226 Transfer complete\r\n")
        assert retr.done
        assert control.sent == ["RETR file.txt", "NOOP"]
        assert not after.future.done()

    @pytest.mark.asyncio
    async def test_terminal_reply_before_payload(self, offline_client, control):
        offline_client.data = StubData()
        retr = offline_client.commands.submit("RETR file.txt")

        control.reply("150 Opening data connection for file.txt\r\n226 Transfer complete\r\n")
        assert not retr.done
        offline_client.data.payload.set_result(b"hello")
        assert await retr.future == b"hello"
        await asyncio.sleep(0)
        assert retr.done

    @pytest.mark.asyncio
    async def test_non_transfer_verb_resolves_with_terminal_reply(self, offline_client, control):
        offline_client.data = StubData()
        command = offline_client.commands.submit("APPE log.txt")

        control.reply("150 Ok to send data\r\n")
        offline_client.data.payload.set_result(b"ignored")
        await asyncio.sleep(0)
        assert not command.future.done()
        control.reply("226 Transfer complete\r\n")
        assert await command.future == "Transfer complete"

    @pytest.mark.asyncio
    async def test_aborted_payload_fails_command(self, offline_client, control):
        offline_client.data = StubData()
        retr = offline_client.commands.submit("RETR file.txt")
        control.reply("150 Opening data connection for file.txt\r\n")
        offline_client.data.payload.set_exception(TransferAbortedError("Data transfer aborted"))
        with pytest.raises(TransferAbortedError):
            await retr.future

    @pytest.mark.asyncio
    async def test_store_waits_for_terminal_reply(self, offline_client, control):
        stor = offline_client.commands.submit("STOR remote.txt", run_now=True)
        control.reply("150 Opening data connection for remote.txt\r\n")
        assert stor.phase is Phase.AWAITING_FINAL_REPLY
        assert not stor.future.done()
        control.reply("226 Transfer complete\r\n")
        assert await stor.future == "Transfer complete"

    @pytest.mark.asyncio
    async def test_dele_transfer_complete_waits_for_file_action(self, offline_client, control):
        dele = offline_client.commands.submit("DELE a.txt")
        control.reply("226 Deletion scheduled\r\n")
        assert dele.phase is Phase.AWAITING_FILE_ACTION
        control.reply("250 Deleted /a.txt\r\n")
        assert await dele.future == "Deleted /a.txt"

    @pytest.mark.asyncio
    async def test_dele_transfer_error_after_226(self, offline_client, control):
        dele = offline_client.commands.submit("DELE a.txt")
        control.reply("226 Deletion scheduled\r\n")
        control.reply("451 Requested action aborted\r\n")
        with pytest.raises(FtpReplyError) as exc_info:
            await dele.future
        assert exc_info.value.code == "451"

    @pytest.mark.asyncio
    async def test_150_without_data_connection_fails(self, offline_client, control):
        retr = offline_client.commands.submit("RETR file.txt")
        control.reply("150 Opening data connection\r\n")
        with pytest.raises(FtpError) as exc_info:
            await retr.future
        assert "No data connection" in str(exc_info.value)


class TestPipelinedReplies:
    """Two commands in flight, both answered in one chunk."""

    @pytest.mark.asyncio
    async def test_same_code_for_queued_and_urgent_command(self, offline_client, control):
        noop = offline_client.commands.submit("NOOP")
        syst = offline_client.commands.submit("SYST")
        abor = offline_client.commands.submit("ABOR", run_now=True)

        control.reply("200 NOOP ok\r\n200 ABOR ok\r\n")
        assert await noop.future == "NOOP ok"
        assert await abor.future == "ABOR ok"
        assert control.sent == ["NOOP", "ABOR", "SYST"]

        control.reply("215 UNIX Type: L8\r\n")
        assert await syst.future == "UNIX Type: L8"
        assert not offline_client.dispatcher.in_flight

    @pytest.mark.asyncio
    async def test_different_codes_for_queued_and_urgent_command(self, offline_client, control):
        noop = offline_client.commands.submit("NOOP")
        abor = offline_client.commands.submit("ABOR", run_now=True)

        control.reply("200 NOOP ok\r\n225 ABOR command successful\r\n")
        assert await noop.future == "NOOP ok"
        assert await abor.future == "ABOR command successful"
        assert not offline_client.dispatcher.in_flight

    @pytest.mark.asyncio
    async def test_abort_during_download_after_payload(self, offline_client, control):
        offline_client.data = StubData()
        retr = offline_client.commands.submit("RETR file.txt")
        control.reply("150 Opening data connection for file.txt\r\n")
        offline_client.data.payload.set_result(b"hello")
        assert await retr.future == b"hello"

        abor = offline_client.commands.submit("ABOR", run_now=True)
        control.reply("226 Transfer complete\r\n226 Abort successful\r\n")
        assert retr.done
        assert await abor.future == "Abort successful"
        assert not offline_client.dispatcher.in_flight

    @pytest.mark.asyncio
    async def test_abort_during_download_before_payload(self, offline_client, control):
        offline_client.data = StubData()
        retr = offline_client.commands.submit("RETR file.txt")
        control.reply("150 Opening data connection for file.txt\r\n")
        abor = offline_client.commands.submit("ABOR", run_now=True)

        # The download has its terminal reply, so the next one belongs to ABOR
        control.reply("226 Transfer complete\r\n226 Abort successful\r\n")
        assert await abor.future == "Abort successful"
        assert not retr.done

        offline_client.data.payload.set_result(b"hello")
        assert await retr.future == b"hello"
        await asyncio.sleep(0)
        assert retr.done
        assert not offline_client.dispatcher.in_flight

    @pytest.mark.asyncio
    async def test_abort_during_upload(self, offline_client, control):
        stor = offline_client.commands.submit("STOR remote.txt", run_now=True)
        control.reply("150 Ok to send data\r\n")
        abor = offline_client.commands.submit("ABOR", run_now=True)

        control.reply("426 Connection closed; transfer aborted\r\n226 Abort successful\r\n")
        with pytest.raises(FtpReplyError) as exc_info:
            await stor.future
        assert exc_info.value.code == "426"
        assert await abor.future == "Abort successful"

    @pytest.mark.asyncio
    async def test_repeated_code_for_one_command_is_processed_once(self, offline_client, control):
        offline_client.data = StubData()
        retr = offline_client.commands.submit("RETR file.txt")
        control.reply("150 Opening data connection\r\n150 Opening data connection\r\n")
        assert retr.phase is Phase.TRANSFERRING
        assert offline_client.data.waiters == 1


class TestConnectionLoss:
    @pytest.mark.asyncio
    async def test_pending_commands_fail(self, offline_client, control):
        running = offline_client.commands.submit("NOOP")
        waiting = offline_client.commands.submit("SYST")
        control.on_close(None)

        for command in (running, waiting):
            with pytest.raises(ConnectionClosedError):
                await command.future

    @pytest.mark.asyncio
    async def test_later_commands_fail_immediately(self, offline_client, control):
        control.on_close(OSError("reset"))
        command = offline_client.commands.submit("NOOP")
        with pytest.raises(ConnectionClosedError):
            await command.future
        assert control.sent == []

    @pytest.mark.asyncio
    async def test_unsolicited_reply_is_dropped(self, offline_client, control):
        control.reply("421 Service closing\r\n")
        command = offline_client.commands.submit("NOOP")
        control.reply("200 NOOP ok\r\n")
        assert await command.future == "NOOP ok"
