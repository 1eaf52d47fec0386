import asyncio
import os
import sys

# Ensure parent directory is in path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from console import HELP_TEXT, CommandShell, format_resources
from errors import LookupFailure, TransferAbandoned
from registry import ResourceRecord
from transfer import TransferResult

RESOURCES = [ResourceRecord("f.txt", "H", 10000), ResourceRecord("movie.mkv", "M", 123456)]


class FakeDiscovery:
    def __init__(self, resources):
        self.resources = resources

    def find_resource(self, file_name):
        for resource in self.resources:
            if resource.file_name == file_name:
                return resource
        return None


class FakeNode:
    def __init__(self, resources=RESOURCES, outcome=None, list_error=None):
        self.discovery = FakeDiscovery(resources)
        self.outcome = outcome
        self.list_error = list_error
        self.downloaded = []

    async def list_resources(self):
        if self.list_error:
            raise self.list_error
        return list(self.discovery.resources)

    async def download(self, file_name):
        self.downloaded.append(file_name)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def run_commands(node, *lines):
    output = []

    async def scenario():
        shell = CommandShell(node, output=output.append)
        for line in lines:
            await shell.handle_command(line)
        if shell.downloads:
            await asyncio.gather(*shell.downloads)

    asyncio.run(scenario())
    return output


def result(verified):
    return TransferResult("f.txt", "H", "H" if verified else "X", 4, b"data", "/tmp/f.txt")


def test_help_and_shortcut():
    assert run_commands(FakeNode(), "/help", "/H") == [HELP_TEXT, HELP_TEXT]


def test_unknown_command_and_plain_text():
    assert run_commands(FakeNode(), "/frobnicate", "hello there", "") == ["\"FROBNICATE\" is not a command."]


def test_resources_lists_table():
    output = run_commands(FakeNode(), "/r")
    assert output == [format_resources(RESOURCES)]
    assert "Received 2 items:" in output[0]
    assert "10.0KB" in output[0]
    assert "movie.mkv" in output[0]


def test_resources_reports_lookup_failure():
    node = FakeNode(list_error=LookupFailure("The tracker did not send the resource list."))
    assert run_commands(node, "/resources") == ["The tracker did not send the resource list."]


def test_empty_resource_list():
    assert format_resources([]) == "\nReceived 0 items:\n"


def test_download_requires_file_name():
    assert run_commands(FakeNode(), "/download") == ["No file name informed."]


def test_download_of_unlisted_file():
    node = FakeNode()
    assert run_commands(node, "/d nothing.txt") == ["File not found."]
    assert node.downloaded == []


def test_download_success_and_mismatch():
    assert run_commands(FakeNode(outcome=result(True)), "/d f.txt") == ["\nDownload successful."]
    assert run_commands(FakeNode(outcome=result(False)), "/d f.txt") == ["\nDownloaded file has different hash."]


def test_download_failure_is_reported():
    node = FakeNode(outcome=TransferAbandoned("Peer stopped responding."))
    output = run_commands(node, "/download f.txt")
    assert output == ["\nDownload of f.txt failed: Peer stopped responding."]
    assert node.downloaded == ["f.txt"]


def test_download_write_errors_are_reported():
    output = run_commands(FakeNode(outcome=OSError("No space left on device")), "/d f.txt")
    assert output == ["\nDownload of f.txt failed: No space left on device"]

    output = run_commands(FakeNode(outcome=ValueError("Invalid file name: '..'")), "/d f.txt")
    assert output == ["\nDownload of f.txt failed: Invalid file name: '..'"]
