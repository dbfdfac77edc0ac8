#!/usr/bin/env python3
"""
heaping.py - Ping a list of IPv4 addresses forever.

Sends one ICMP echo request to every host every ten seconds and prints the
round-trip time of each reply, or a notice when a host is reported
unreachable. A sender and a receiver share one raw ICMP socket.

Usage:
    sudo python heaping.py [-c count] [-i interval] <ip> [ip ...]

Requires root/administrator privileges to use raw sockets.
"""

import argparse
import ipaddress
import os
import signal
import socket
import sys
import threading
import time

from icmp_packet import build_echo_request, decode, timestamp_now

CYCLE_INTERVAL = 10.0  # Seconds between send cycles
POLL_TIMEOUT = 1.0     # Longest the receiver blocks before checking for shutdown
RECV_BUFSIZE = 512


def emit(line: str, stream=None) -> None:
    """Write *line* and its newline in one call, then flush.

    The sender and receiver threads share stdout, so each line must reach
    the stream whole.
    """
    if stream is None:
        stream = sys.stdout
    stream.write(f"{line}\n")
    stream.flush()


def run_id() -> int:
    """Return the 16-bit identifier stamped on every request of this run."""
    return os.getpid() & 0xFFFF


def open_icmp_socket(timeout: float = POLL_TIMEOUT) -> socket.socket:
    """Create the raw ICMP socket shared by the sender and the receiver.

    Args:
        timeout: Receive timeout in seconds.

    Returns:
        Configured raw ICMP socket.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
    sock.settimeout(timeout)
    return sock


class Sender:
    """Sends one echo request to every host per cycle.

    Args:
        sock:       Socket to send on.
        hosts:      IPv4 addresses, pinged in this order every cycle.
        identifier: Run identifier.
        stop:       Set to end the run; also set by the sender when it ends.
        peer_done:  Set once the receiver has exited.
        count:      Number of cycles to run, or ``None`` for no limit.
        interval:   Seconds to wait after each cycle.
    """

    def __init__(
        self,
        sock: socket.socket,
        hosts: tuple[str, ...],
        identifier: int,
        stop: threading.Event,
        peer_done: threading.Event,
        count: int | None = None,
        interval: float = CYCLE_INTERVAL,
    ) -> None:
        self.sock = sock
        self.hosts = hosts
        self.identifier = identifier
        self.stop = stop
        self.peer_done = peer_done
        self.count = count
        self.interval = interval

    def _finished(self, cycle: int) -> bool:
        if self.stop.is_set() or self.peer_done.is_set():
            return True
        return self.count is not None and cycle >= self.count

    def sleep(self) -> None:
        """Wait out the interval, waking early on stop or receiver exit."""
        deadline = time.monotonic() + self.interval
        while not (self.stop.is_set() or self.peer_done.is_set()):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.stop.wait(min(remaining, POLL_TIMEOUT))

    def send_cycle(self, cycle: int) -> int:
        """Send one request to every host and return the number of attempts.

        The wire sequence number is the cycle number modulo 2**16.
        """
        seq = cycle & 0xFFFF
        emit(f"meta: new cycle (seq={seq})")

        start = time.monotonic()
        sent = 0
        for host in self.hosts:
            packet = build_echo_request(self.identifier, seq, timestamp_now())
            try:
                self.sock.sendto(packet, (host, 0))
            except OSError as exc:
                emit(f"sendto({host}): {exc}")
            sent += 1

        elapsed = int((time.monotonic() - start) * 1000)
        emit(f"meta: sent {sent} pings in {elapsed} ms")
        return sent

    def run(self) -> int:
        """Run cycles until stopped; return the number of cycles sent."""
        cycle = 0
        try:
            while not self._finished(cycle):
                self.send_cycle(cycle)
                cycle += 1
                # Also covers the last bounded cycle, so its replies can arrive.
                self.sleep()
        finally:
            self.stop.set()
        return cycle


class Receiver:
    """Reads the ICMP socket and prints replies to our own requests.

    Args:
        sock:       Socket to read from; its timeout bounds each read.
        identifier: Run identifier.
        stop:       Ends the loop once set.
        done:       Set when the loop exits, for any reason.
    """

    def __init__(
        self,
        sock: socket.socket,
        identifier: int,
        stop: threading.Event,
        done: threading.Event,
    ) -> None:
        self.sock = sock
        self.identifier = identifier
        self.stop = stop
        self.done = done

    def receive_one(self) -> None:
        """Read one datagram and print the event it carries, if any."""
        try:
            packet, addr = self.sock.recvfrom(RECV_BUFSIZE)
        except (socket.timeout, InterruptedError):
            return
        except OSError as exc:
            emit(f"recvfrom: {exc}", sys.stderr)
            return

        event = decode(packet, addr[0], self.identifier)
        if event is not None:
            emit(str(event))

    def run(self) -> None:
        try:
            while not self.stop.is_set():
                self.receive_one()
        finally:
            self.done.set()


def _install_signal_handlers(stop: threading.Event, previous: dict) -> None:
    """Make SIGINT and SIGTERM set *stop*.

    Each replaced handler is recorded in *previous* as soon as it is
    replaced, so the caller can restore it even if a later one fails.
    """
    def handler(signum, frame):
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError as exc:
            raise OSError(f"signal({signal.Signals(signum).name}): {exc}") from exc


def monitor(
    hosts: tuple[str, ...],
    count: int | None = None,
    interval: float = CYCLE_INTERVAL,
    sock: socket.socket | None = None,
) -> int:
    """Ping *hosts* every *interval* seconds until stopped.

    The receiver runs in a background thread while the sender runs in the
    calling thread. SIGINT and SIGTERM stop both when called from the main
    thread. The socket is closed before returning.

    Args:
        hosts:    IPv4 addresses to ping.
        count:    Number of cycles, or ``None`` to run until signalled.
        interval: Seconds between cycles.
        sock:     Socket to use instead of opening a raw ICMP socket.

    Returns:
        Number of cycles sent.
    """
    if sock is None:
        sock = open_icmp_socket()

    identifier = run_id()
    stop = threading.Event()
    receiver_done = threading.Event()
    previous = {}

    try:
        if threading.current_thread() is threading.main_thread():
            _install_signal_handlers(stop, previous)

        receiver = Receiver(sock, identifier, stop, receiver_done)
        thread = threading.Thread(target=receiver.run, name="receiver", daemon=True)
        thread.start()

        sender = Sender(sock, hosts, identifier, stop, receiver_done, count, interval)
        try:
            cycles = sender.run()
        finally:
            stop.set()
            thread.join()
    finally:
        for signum, handler in previous.items():
            if handler is not None:
                signal.signal(signum, handler)
        sock.close()

    return cycles


def ipv4_address(value: str) -> str:
    """argparse type for a dotted-quad IPv4 address."""
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"couldn't parse '{value}' as IP address")


def positive_int(value: str) -> int:
    """argparse type for a strictly positive integer."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid count: '{value}'")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"count must be positive, got {number}")
    return number


def positive_float(value: str) -> float:
    """argparse type for a strictly positive number of seconds."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid interval: '{value}'")
    if not number > 0:
        raise argparse.ArgumentTypeError(f"interval must be positive, got {value}")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="heaping",
        description="Ping a list of IPv4 addresses forever.",
    )
    parser.add_argument(
        "hosts",
        nargs="+",
        type=ipv4_address,
        metavar="ip",
        help="IPv4 address to ping.",
    )
    parser.add_argument(
        "-c",
        "--count",
        type=positive_int,
        default=None,
        help="Stop after this many cycles (default: run until interrupted).",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=positive_float,
        default=CYCLE_INTERVAL,
        help="Seconds between cycles (default: %(default)s).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point for heaping."""
    args = parse_args(argv)

    try:
        sock = open_icmp_socket()
    except PermissionError:
        print(
            "heaping: raw socket requires root privileges. Try running with sudo.",
            file=sys.stderr,
        )
        return 1
    except OSError as exc:
        print(f"heaping: socket(SOCK_RAW): {exc}", file=sys.stderr)
        return 1

    try:
        monitor(tuple(args.hosts), args.count, args.interval, sock=sock)
    except OSError as exc:
        print(f"heaping: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
