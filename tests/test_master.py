from pathlib import Path

from podcluster.master import describe_pod
from podcluster.pod_parser import PodSpec, parse_pod_file


def test_describe_pod_lists_every_field():
    spec = PodSpec(
        name="web", cpu=2, memory=512, main_script="app.py", logging_script="log.py"
    )
    assert describe_pod(spec) == (
        "Pod Name: web\nCPU: 2\nMemory: 512 MB\nMain: app.py\nLogging: log.py"
    )


def test_describe_empty_spec():
    lines = describe_pod(PodSpec()).splitlines()
    assert lines == ["Pod Name: ", "CPU: 0", "Memory: 0 MB", "Main: ", "Logging: "]


def test_describe_parsed_pod_file(tmp_path: Path):
    pod = tmp_path / "sample.pod"
    pod.write_text(
        "name: worker\n"
        "cpu: 3\n"
        "memory: 256MB\n"
        "main: run.py\n"
        "sidecars:\n"
        "  - logging: logger.py\n"
    )
    text = describe_pod(parse_pod_file(pod))
    assert "Pod Name: worker" in text
    assert "CPU: 3" in text
    assert "Memory: 256 MB" in text
    assert "Main: run.py" in text
    assert text.endswith("Logging: logger.py")