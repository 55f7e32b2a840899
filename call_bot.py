#!/usr/bin/env python3
"""Headless call participant on the command line.

Two modes:
  1. Two headless clients call each other through an in-process relay:
     python3 call_bot.py --demo

  2. Join a room on a running relay and chat with whoever is there:
     python3 call_bot.py --join ROOM [--server ws://host:5000] [--start]
"""
import argparse
import asyncio
import logging

from call_client import CallClient
from config import get_settings
from media import fetch_ice_servers
from relay import RelayServer

DEMO_ROOM = 'demo'


async def demo(settings):
    """Two headless clients negotiate a call and exchange a few lines."""
    server = RelayServer(settings)
    async with server.serve('127.0.0.1', 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        url = f'ws://127.0.0.1:{port}'
        print(f'[demo] Relay on {url}')

        # loopback only, no STUN round trips
        alice = CallClient(url, ice_servers=[])
        bob = CallClient(url, ice_servers=[])
        await alice.connect()
        await bob.connect()
        try:
            await alice.join(DEMO_ROOM)
            while not server.hub.members(DEMO_ROOM):
                await asyncio.sleep(0.05)
            await bob.join(DEMO_ROOM)

            print('[demo] Connecting...')
            try:
                await asyncio.gather(alice.wait_connected(20), bob.wait_connected(20))
            except asyncio.TimeoutError:
                print(f'[demo] FAILED to connect (alice={alice.state}, bob={bob.state})')
                return
            print(f'[demo] Connected! alice is {alice.machine.role}, bob is {bob.machine.role}\n')

            for sender, line in ((alice, 'hey, can you see me?'),
                                 (bob, 'loud and clear'),
                                 (alice, 'bye!')):
                await sender.send(line)
                # chat is echoed to the sender too
                for client in (alice, bob):
                    msg = await client.receive(timeout=10)
                    if client is bob:
                        name = 'alice' if msg.from_id == alice.session_id else 'bob'
                        print(f'  {name}: {msg.message}')
        finally:
            await alice.close()
            await bob.close()
    print('\n[demo] Done.')


async def join_mode(args, settings):
    """Join a room on a running relay and print chat until interrupted."""
    if args.ice_config:
        ice_servers = await asyncio.to_thread(fetch_ice_servers, args.ice_config)
    else:
        ice_servers = settings.ice_servers()

    client = CallClient(args.server, ice_servers=ice_servers, media_source=args.play)
    await client.connect()
    try:
        await client.join(args.join)
        print(f'Joined {args.join} as {client.session_id}')
        if args.start:
            await client.start_call()
        if args.say:
            await client.send(args.say)
        while True:
            msg = await client.receive()
            who = 'me' if msg.from_id == client.session_id else msg.from_id[:6]
            print(f'[{who}] {msg.message}')
    finally:
        await client.close()


def main():
    settings = get_settings()
    p = argparse.ArgumentParser()
    p.add_argument('--demo', action='store_true', help='Two headless clients call each other')
    p.add_argument('--join', metavar='ROOM', help='Join ROOM on a running relay')
    p.add_argument('--server', default=f'ws://localhost:{settings.PORT}', help='Relay websocket URL')
    p.add_argument('--start', action='store_true', help='Place the call instead of waiting')
    p.add_argument('--play', metavar='FILE', help='Media file or device to send (default: synthetic)')
    p.add_argument('--ice-config', metavar='URL', help='Fetch ICE servers from a relay /config URL')
    p.add_argument('--say', metavar='TEXT', help='Send one chat line after joining')
    args = p.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        if args.demo:
            asyncio.run(demo(settings))
        elif args.join:
            asyncio.run(join_mode(args, settings))
        else:
            print('Usage: call_bot.py --demo | --join ROOM')
            print('  --demo: Two headless clients call each other (tests everything)')
            print('  --join: Join a room on a running relay')
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
