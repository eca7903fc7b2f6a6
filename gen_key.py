import argparse
import json
import logging
import secrets
import string
import sys
from dataclasses import dataclass
from pathlib import Path

import config

# URL-safe so keys can travel in query strings unescaped
KEY_ALPHABET = string.ascii_letters + string.digits + "-_"
DEFAULT_KEY_LENGTH = 40

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


@dataclass
class KeyGenConfig:
    username: str
    config_path: Path
    length: int = DEFAULT_KEY_LENGTH
    force: bool = False

    @classmethod
    def from_args(cls, argv=None) -> 'KeyGenConfig':
        """Create KeyGenConfig from command line arguments."""
        parser = argparse.ArgumentParser(description='Generate an API key and add it to the config file')
        parser.add_argument('username', help='Name the key is issued to')
        parser.add_argument('--config', default=config.CONFIG_PATH,
                            help='Path to config.json')
        parser.add_argument('--length', type=int, default=DEFAULT_KEY_LENGTH,
                            help='Key length')
        parser.add_argument('--force', action='store_true',
                            help='Replace an existing key for this user')
        args = parser.parse_args(argv)

        if args.length < config.MIN_KEY_LENGTH:
            parser.error(f'--length must be at least {config.MIN_KEY_LENGTH}')

        return cls(
            username=args.username,
            config_path=Path(args.config),
            length=args.length,
            force=args.force,
        )


def generate_key(length: int = DEFAULT_KEY_LENGTH) -> str:
    return ''.join(secrets.choice(KEY_ALPHABET) for _ in range(length))


def add_key(cfg: KeyGenConfig) -> str:
    """Generate a key for ``cfg.username`` and write it into the config file."""
    with open(cfg.config_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    keys = data.setdefault('keys', {})
    if cfg.username in keys and not cfg.force:
        raise ValueError(f"User {cfg.username} already has a key, use --force to replace it")

    key = generate_key(cfg.length)
    while key in keys.values():
        key = generate_key(cfg.length)
    keys[cfg.username] = key

    with open(cfg.config_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
        f.write('\n')

    logging.info(f"Added key for {cfg.username} to {cfg.config_path}")
    return key


def main(argv=None) -> int:
    cfg = KeyGenConfig.from_args(argv)
    try:
        key = add_key(cfg)
    except (OSError, ValueError) as e:
        logging.error(str(e))
        return 1
    print(key)
    return 0


if __name__ == "__main__":
    sys.exit(main())
