import subprocess
from dataclasses import dataclass
from typing import List

from common.logs import get_logger
from common.messages import Tag
from common.protocol import b64, encode

log = get_logger("exec")


@dataclass
class CommandResult:
    command: str
    output: str      # stdout and stderr combined
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(command: str, shell: str = "/bin/bash") -> CommandResult:
    '''
    This function runs an approved command through the local shell.
        Input:
            - command: command text as received from the peer
            - shell: interpreter invoked as [shell, "-c", command]
        Output: CommandResult with the combined output and exit status
    No timeout is applied; the caller decided to run it.
    '''
    log.info("running %r", command)
    try:
        proc = subprocess.run(
            [shell, "-c", command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,   # combined, like the operator would see it
        )
    except OSError as e:
        # Shell missing or not executable
        return CommandResult(command, f"{shell}: {e.strerror or e}", 127)
    output = proc.stdout.decode("utf-8", errors="replace")
    return CommandResult(command, output, proc.returncode)


def result_messages(result: CommandResult) -> List[str]:
    '''
    Encode a command result as protocol lines.
    Success: one CMD_OUT per output line, in order, trailing newlines dropped
    (empty output still gives one empty CMD_OUT). Failure: a single CMD_ERR
    carrying the whole output in Base64.
    '''
    text = result.output.rstrip("\n")
    if not result.ok:
        return [encode(Tag.CMD_ERR, b64(text))]
    return [encode(Tag.CMD_OUT, line.rstrip("\r")) for line in text.split("\n")]
