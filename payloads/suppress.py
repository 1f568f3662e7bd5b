"""Worker-side suppress payload.

Invoked as ``suppress.py <target> <completion_ms> <uniquifier>``. The scheduler owns
the timing: the process holds its capacity until the completion time it was
launched with, then exits.
"""
import sys
import time

KIND = "suppress"


def main(argv):
    if len(argv) < 2:
        print(f"usage: {KIND}.py <target> <completion_ms> [uniquifier]", file=sys.stderr)
        return 2
    target, completion_ms = argv[0], int(argv[1])
    remaining = completion_ms / 1000.0 - time.time()
    if remaining > 0:
        time.sleep(remaining)
    print(f"{KIND} {target} done at {int(time.time() * 1000)}", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
