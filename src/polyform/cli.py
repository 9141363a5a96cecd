from __future__ import annotations

import typer

from polyform.config import Settings, configure_logging
from polyform.errors import PolyformError
from polyform.export import build_export
from polyform.exports import sweep_expired
from polyform.files import FileStore
from polyform.storage import init_storage
from polyform.uploads import sweep_stale_uploads

cli = typer.Typer(add_completion=False)


def run_server(host: str | None, port: int | None) -> None:
    import uvicorn

    from polyform.app import create_app

    settings = Settings()
    configure_logging(settings.log_level)
    resolved_host = host or settings.host
    resolved_port = port if port is not None else settings.port
    uvicorn.run(create_app(settings), host=resolved_host, port=resolved_port)


@cli.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="バインドするアドレス"),
    port: int | None = typer.Option(None, help="バインドするポート"),
) -> None:
    ctx.obj = {"host": host, "port": port}
    if ctx.invoked_subcommand is None:
        run_server(host, port)


@cli.command()
def run(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="バインドするアドレス"),
    port: int | None = typer.Option(None, help="バインドするポート"),
) -> None:
    base = ctx.obj or {}
    resolved_host = host or base.get("host")
    resolved_port = port if port is not None else base.get("port")
    run_server(resolved_host, resolved_port)


@cli.command()
def sweep(
    exports: bool = typer.Option(True, help="期限切れエクスポートを削除する"),
    uploads: bool = typer.Option(True, help="未使用の一時アップロードを削除する"),
) -> None:
    """外部スケジューラ（cron など）から呼ぶ掃除ジョブ。"""
    settings = Settings()
    configure_logging(settings.log_level)
    storage = init_storage(settings)
    try:
        if exports:
            removed = sweep_expired(storage, FileStore(settings.export_dir))
            typer.echo(f"exports removed: {removed}")
        if uploads:
            removed = sweep_stale_uploads(
                storage, FileStore(settings.upload_dir), settings.preupload_ttl_seconds
            )
            typer.echo(f"uploads removed: {removed}")
    finally:
        storage.dispose()


@cli.command()
def export(
    form_id: str = typer.Argument(..., help="エクスポートするフォームID"),
    search: str | None = typer.Option(None, help="検索語"),
    date_from: str | None = typer.Option(None, help="開始日 (YYYY-MM-DD)"),
    date_to: str | None = typer.Option(None, help="終了日 (YYYY-MM-DD)"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    storage = init_storage(settings)
    try:
        job = build_export(
            storage,
            FileStore(settings.export_dir),
            form_id,
            {"search": search, "date_from": date_from, "date_to": date_to},
            base_url=settings.base_url,
            secret=settings.secret_key,
            ttl_hours=settings.export_ttl_hours,
        )
    except PolyformError as exc:
        typer.echo(f"export failed: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        storage.dispose()
    typer.echo(f"{job['id']} {job['filename']} ({job['record_count']} records)")


if __name__ == "__main__":
    cli()
