"""
Command line interface.

Commands are registered on the Flask app's CLI and exposed through the
`strongbox` console script:

    strongbox perform MODEL [MODEL ...]
    strongbox prune [MODEL ...]
    strongbox list MODEL
    strongbox check [--connect]
    strongbox restore MODEL --backend NAME --key KEY --dest DIR
    strongbox keygen NAME
    strongbox schedule
"""

import os
import sys
import signal
import logging
import threading
from pathlib import Path

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from strongbox.backup.errors import BackupError, ConfigError, StorageError
from strongbox.backup.policy import load_policy
from strongbox.config import retry_settings
from strongbox.utils.keys import KeyStore, generate_key_pair, load_private_key

logger = logging.getLogger(__name__)

policy_option = click.option(
    '--policy', 'policy_path', type=click.Path(dir_okay=False),
    help='Policy file (default: STRONGBOX_POLICY).'
)


def _load(policy_path=None):
    try:
        return load_policy(policy_path or current_app.config['STRONGBOX_POLICY'])
    except ConfigError as e:
        raise click.ClickException(str(e))


def _models(policy, names):
    try:
        return [policy.get(name) for name in names] if names else list(policy)
    except ConfigError as e:
        raise click.ClickException(str(e))


def _storage(backend):
    from strongbox.backup.storage import create_storage
    return create_storage(backend, retry_settings(current_app.config))


def _backend(model, name):
    if name is None:
        return model.primary_backend
    for backend in model.backends:
        if backend.name == name:
            return backend
    raise click.ClickException(
        f"Model {model.name} has no backend {name!r}. Available: {[b.name for b in model.backends]}"
    )


@click.command('perform')
@with_appcontext
@click.argument('models', nargs=-1)
@click.option('--all', 'run_all', is_flag=True, help='Run every model in the policy.')
@policy_option
def perform_command(models, run_all, policy_path):
    """Run backup models now.

    Exits non-zero if any model did not succeed.
    """
    from strongbox.backup.executor import build_executor

    if not models and not run_all:
        raise click.UsageError('Name at least one model or pass --all.')

    policy = _load(policy_path)
    failures = 0

    for model in _models(policy, models):
        executor = build_executor(model)

        # SIGINT/SIGTERM cancel the run; cleanup still happens
        def _cancel(signum, frame):
            executor.cancel()

        previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            run = executor.execute()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        click.echo(f"{model.name} {run.run_id}: {run.status}")
        for outcome in executor.outcomes:
            line = f"  [{outcome.backend_name}] {outcome.status}"
            if outcome.location:
                line += f" {outcome.location}"
            if outcome.error:
                line += f" ({outcome.error})"
            if outcome.pruned:
                line += f", pruned {len(outcome.pruned)}"
            if outcome.prune_errors:
                line += f", {len(outcome.prune_errors)} prune error(s)"
            click.echo(line)
        if run.error_message and not executor.outcomes:
            click.echo(f"  error: {run.error_message}")

        if not executor.succeeded:
            failures += 1

    if failures:
        sys.exit(1)


@click.command('prune')
@with_appcontext
@click.argument('models', nargs=-1)
@policy_option
def prune_command(models, policy_path):
    """Apply retention to stored backups without running a backup."""
    from strongbox.backup.retention import RetentionManager

    policy = _load(policy_path)
    manager = RetentionManager(retry_settings(current_app.config))
    errors = 0

    for model in _models(policy, models):
        for backend_name, result in manager.enforce_model_policy(model).items():
            click.echo(
                f"{model.name} [{backend_name}]: deleted {len(result.deleted)}, kept {len(result.kept)}"
            )
            for error in result.errors:
                click.echo(f"  error: {error}", err=True)
            errors += len(result.errors)

    if errors:
        sys.exit(1)


@click.command('list')
@with_appcontext
@click.argument('model')
@click.option('--backend', 'backend_name', help='Only this backend.')
@policy_option
def list_command(model, backend_name, policy_path):
    """List stored backup sets of a model."""
    model_policy = _models(_load(policy_path), [model])[0]
    backends = [_backend(model_policy, backend_name)] if backend_name else model_policy.backends

    for backend in backends:
        click.echo(f"[{backend.name}]")
        try:
            sets = _storage(backend).list_all(model_policy.name)
        except StorageError as e:
            click.echo(f"  error: {e}", err=True)
            continue
        if not sets:
            click.echo("  (none)")
        for backup_set in sets:
            if backup_set.is_complete:
                manifest = backup_set.manifest
                click.echo(
                    f"  {backup_set.run_id}  complete  {manifest.total_bytes} bytes  "
                    f"{manifest.total_chunks} chunk(s)  {manifest.checksum}"
                )
            else:
                click.echo(f"  {backup_set.run_id}  incomplete")


@click.command('check')
@with_appcontext
@click.option('--connect', is_flag=True, help='Also test access to every backend.')
@policy_option
def check_command(connect, policy_path):
    """Validate the policy and resolve every encryption key."""
    policy = _load(policy_path)
    problems = 0

    for model in policy:
        recipients = model.pipeline.encryption_recipients
        try:
            KeyStore(model.encryption_keys, model.key_dir).resolve(recipients)
            keys = f"{len(recipients)} key(s)" if recipients else "unencrypted"
            click.echo(f"{model.name}: OK ({len(model.sources)} source(s), {keys})")
        except BackupError as e:
            click.echo(f"{model.name}: {e}", err=True)
            problems += 1

        if connect:
            for backend in model.backends:
                try:
                    storage = _storage(backend)
                    if hasattr(storage, 'test_connection'):
                        storage.test_connection()
                    click.echo(f"  [{backend.name}] reachable")
                except StorageError as e:
                    click.echo(f"  [{backend.name}] {e}", err=True)
                    problems += 1

    if problems:
        sys.exit(1)


@click.command('restore')
@with_appcontext
@click.argument('model')
@click.option('--backend', 'backend_name', help='Backend to restore from (default: primary).')
@click.option('--run', 'run_id', help='Run id (default: newest complete set).')
@click.option('--key', 'key_path', type=click.Path(dir_okay=False), help='Private key for encrypted sets.')
@click.option('--password', envvar='STRONGBOX_KEY_PASSWORD', help='Private key password.')
@click.option('--dest', required=True, type=click.Path(file_okay=False), help='Directory to extract into.')
@policy_option
def restore_command(model, backend_name, run_id, key_path, password, dest, policy_path):
    """Verify, decrypt and extract a stored backup."""
    from strongbox.backup.restore import find_set, restore_set

    model_policy = _models(_load(policy_path), [model])[0]
    backend = _backend(model_policy, backend_name)

    try:
        storage = _storage(backend)
        backup_set = find_set(storage, model_policy.name, run_id)
        private_key = load_private_key(key_path, password) if key_path else None
        extracted = restore_set(storage, backup_set, dest, private_key, current_app.config.get('TEMP_DIR'))
    except BackupError as e:
        raise click.ClickException(str(e))

    click.echo(f"Restored {len(extracted)} entries from {backup_set.run_id} to {dest}")


@click.command('keygen')
@with_appcontext
@click.argument('name')
@click.option('--type', 'key_type', type=click.Choice(['x25519', 'rsa']), default='x25519', show_default=True)
@click.option('--out', 'out_dir', type=click.Path(file_okay=False), default='.', show_default=True)
def keygen_command(name, key_type, out_dir):
    """Generate a recipient key pair: NAME.pem (private) and NAME.pub."""
    out_path = Path(out_dir).expanduser()
    out_path.mkdir(parents=True, exist_ok=True)
    private_path = out_path / f"{name}.pem"
    public_path = out_path / f"{name}.pub"
    if private_path.exists() or public_path.exists():
        raise click.ClickException(f"Refusing to overwrite existing key {name} in {out_path}")

    private_pem, public_pem = generate_key_pair(key_type)
    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(private_pem)
    public_path.write_bytes(public_pem)

    click.echo(f"Private key: {private_path}")
    click.echo(f"Public key:  {public_path}")


@click.command('schedule')
@with_appcontext
@policy_option
def schedule_command(policy_path):
    """Run scheduled models until interrupted."""
    from strongbox.scheduler import init_scheduler, start_scheduler, stop_scheduler, sync_model_schedules

    if policy_path:
        current_app.config['STRONGBOX_POLICY'] = policy_path
    policy = _load(policy_path)

    app = current_app._get_current_object()
    init_scheduler(app)
    sync_model_schedules(policy)
    start_scheduler()

    stopped = threading.Event()

    def _stop(signum, frame):
        stopped.set()

    signal.signal(signal.SIGTERM, _stop)
    try:
        while not stopped.wait(1):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        stop_scheduler()


def register_commands(app):
    """Register all commands on app.cli."""
    for command in (perform_command, prune_command, list_command, check_command,
                    restore_command, keygen_command, schedule_command):
        app.cli.add_command(command)


def _create_app():
    from strongbox import create_app
    return create_app()


main = FlaskGroup(create_app=_create_app, help='Strongbox backup engine.')
