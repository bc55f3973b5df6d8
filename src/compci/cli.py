import os
import sys

import click
import requests

API_BASE_URL = os.getenv("COMPCI_API_URL", "http://localhost:8000")
TIMEOUT = 30

STATUS_COLORS = {
    "queued": "yellow",
    "running": "blue",
    "finished": "green",
    "errored": "red",
    "passed": "green",
    "failed": "red",
}


def handle_api_error(response):
    try:
        error_detail = response.json().get("detail", "Unknown error")
    except ValueError:
        error_detail = f"HTTP {response.status_code}"
    return error_detail


def fail(message):
    click.echo(click.style(f"✗ {message}", fg="red"), err=True)
    sys.exit(1)


def request(method, path, **kwargs):
    try:
        return requests.request(method, f"{API_BASE_URL}{path}", timeout=TIMEOUT, **kwargs)
    except requests.exceptions.Timeout:
        fail("Request timed out")
    except requests.exceptions.ConnectionError:
        fail(f"Cannot connect to worker at {API_BASE_URL}")


@click.group()
def cli():
    """Component test worker CLI - schedule and inspect test jobs"""
    pass


@cli.command()
@click.option("--kind", type=click.Choice(["full-build", "single-component"]), default="single-component",
              show_default=True, help="Job kind")
@click.option("--branch", required=True, help="Branch to test")
@click.option("--commit", help="Commit SHA to test")
@click.option("--component", help="Component name (single-component jobs)")
def submit(kind, branch, commit, component):
    """Schedule a test job"""
    if kind == "single-component" and not component:
        fail("--component is required for single-component jobs")

    payload = {"kind": kind, "branch": branch}
    if commit:
        payload["commit"] = commit
    if component:
        payload["component"] = component

    response = request("POST", "/jobs", json=payload)
    if response.status_code == 200:
        result = response.json()
        click.echo(click.style("✓ Job submitted successfully!", fg="green"))
        click.echo(f"Job ID: {result['job_id']}")
        click.echo(f"Status: {result['status']}")
    else:
        fail(f"Error submitting job: {handle_api_error(response)}")


@cli.command()
@click.option("--job-id", required=True, help="Job ID to check")
def status(job_id):
    """Show a job and its per-component results"""
    response = request("GET", f"/jobs/{job_id}")
    if response.status_code == 404:
        fail(f"Job {job_id} not found")
    if response.status_code != 200:
        fail(f"Error getting job status: {handle_api_error(response)}")

    job = response.json()
    color = STATUS_COLORS.get(job["status"], "white")
    click.echo(f"Job ID: {job['id']}")
    click.echo(f"Status: {click.style(job['status'].upper(), fg=color)}")
    click.echo(f"Kind: {job['kind']}")
    click.echo(f"Branch: {job['branch']}")
    if job.get("commit"):
        click.echo(f"Commit: {job['commit']}")
    click.echo(f"Components: {job['size']}  passed: {job['passed']}  failed: {job['failed']}")
    if job.get("error_message"):
        click.echo(click.style(f"Error: {job['error_message']}", fg="red"))

    if job.get("targets"):
        click.echo()
        click.echo(f"{'Component':<40} {'Status':<10} {'Passed':>7} {'Failed':>7} {'Retries':>8}")
        click.echo("-" * 76)
        for target in job["targets"]:
            target_status = click.style(
                f"{target['status'].upper():<10}", fg=STATUS_COLORS.get(target["status"], "white")
            )
            click.echo(f"{target['target']:<40} {target_status} "
                       f"{target['passed']:>7} {target['failed']:>7} {target['retries']:>8}")
            if target.get("message"):
                click.echo(f"    {target['message']}")


@cli.command()
@click.option("--job-id", required=True, help="Job ID to remove")
def remove(job_id):
    """Remove a job from the worker queue"""
    response = request("DELETE", f"/jobs/{job_id}")
    if response.status_code == 200:
        click.echo(click.style("✓ Job removal requested!", fg="green"))
    else:
        fail(f"Error removing job: {handle_api_error(response)}")


@cli.command()
@click.option("--job-id", required=True, help="Job ID to queue on the worker directly")
def run(job_id):
    """Queue an existing job on the worker, bypassing the message bus"""
    response = request("POST", f"/jobs/{job_id}/run")
    if response.status_code == 202:
        click.echo(click.style(f"✓ {response.json()['message']}", fg="green"))
    else:
        fail(f"Error queuing job: {handle_api_error(response)}")


@cli.command()
def health():
    """Show worker health"""
    response = request("GET", "/health")
    if response.status_code != 200:
        fail(f"Worker unhealthy: {handle_api_error(response)}")
    data = response.json()
    click.echo(click.style(f"✓ {data['service']} is {data['status']}", fg="green"))
    click.echo(f"Pending messages: {data['queue_size']}")

    response = request("GET", "/")
    if response.status_code == 200:
        data = response.json()
        click.echo(f"Processed jobs: {data['processed']}")
        click.echo(f"Queued jobs: {data['queued']}")
        click.echo(f"Running: {'yes' if data['running'] else 'no'}")


if __name__ == "__main__":
    cli()
