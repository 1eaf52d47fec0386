import asyncio
import threading
from typing import Callable, List, Optional

from errors import P2PError


PROMPT = "CLIENT> "

HELP_TEXT = (
    "\nCommand list [ /<command> (<shortcut>) <arguments> ]:"
    "\n  /help (/h):\n    Show command list"
    "\n  /resources (/r):\n    Request resource list from the tracker"
    "\n  /download (/d) <filename>:\n    Download a file from the resource list."
    "\n"
)


def format_resources(resources) -> str:
    if not resources:
        return "\nReceived 0 items:\n"
    width = max(len("filename"), *(len(r.file_name) for r in resources))
    lines = [f"\nReceived {len(resources)} items:", f"  {'filename'.ljust(width)}  size"]
    for r in resources:
        lines.append(f"  {r.file_name.ljust(width)}  {r.size_bytes / 1000}KB")
    return "\n".join(lines) + "\n"


class CommandShell:
    """
    Interactive prompt for a PeerNode: /help, /resources, /download <fileName>.
    """

    def __init__(self, node, output: Callable[[str], None] = print):
        self.node = node
        self.output = output
        self.commands = {
            "HELP": self.handle_help,
            "H": self.handle_help,
            "RESOURCES": self.handle_resources,
            "R": self.handle_resources,
            "DOWNLOAD": self.handle_download,
            "D": self.handle_download,
        }
        self.downloads = set()

    async def handle_command(self, line: str):
        line = line.strip()
        if not line.startswith("/"):
            return
        args = line.split()
        name = args[0][1:].upper()
        handler = self.commands.get(name)
        if handler is None:
            self.output(f"\"{name}\" is not a command.")
            return
        await handler(args)

    async def handle_help(self, args: List[str]):
        self.output(HELP_TEXT)

    async def handle_resources(self, args: List[str]):
        try:
            resources = await self.node.list_resources()
        except P2PError as e:
            self.output(str(e))
            return
        self.output(format_resources(resources))

    async def handle_download(self, args: List[str]) -> Optional[asyncio.Task]:
        if len(args) < 2:
            self.output("No file name informed.")
            return None
        file_name = " ".join(args[1:])
        if self.node.discovery.find_resource(file_name) is None:
            self.output("File not found.")
            return None

        # Run in the background so the prompt stays usable during long transfers.
        task = asyncio.create_task(self._download(file_name))
        self.downloads.add(task)
        task.add_done_callback(self.downloads.discard)
        return task

    async def _download(self, file_name: str):
        try:
            result = await self.node.download(file_name)
        except (P2PError, OSError, ValueError) as e:
            self.output(f"\nDownload of {file_name} failed: {e}")
            return
        if result.verified:
            self.output("\nDownload successful.")
        else:
            self.output("\nDownloaded file has different hash.")

    async def run(self):
        """
        Reads commands from stdin until EOF.
        """
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue = asyncio.Queue()
        # Daemon thread: a pending input() must not keep the process alive on shutdown.
        threading.Thread(target=self._read_lines, args=(loop, lines), daemon=True).start()

        self.output("Successfully registered to tracker.\nType /help to see the command list.")
        while True:
            line = await lines.get()
            if line is None:
                break
            await self.handle_command(line)

    @staticmethod
    def _read_lines(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue):
        while True:
            try:
                line = input(PROMPT)
            except EOFError:
                line = None
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                return  # loop already closed
            if line is None:
                return
