import json
from unittest.mock import MagicMock, patch

import httpx

from kubeloop.cli import cluster_manager


class TestManifests:
    def test_load_single_list_and_items(self, tmp_path):
        single = tmp_path / "single.json"
        single.write_text(json.dumps({"kind": "Node", "name": "n1"}))
        listed = tmp_path / "list.json"
        listed.write_text(json.dumps([{"kind": "Node", "name": "n1"}, {"kind": "Node", "name": "n2"}]))
        wrapped = tmp_path / "wrapped.json"
        wrapped.write_text(json.dumps({"items": [{"kind": "Node", "name": "n3"}]}))

        assert [m["name"] for m in cluster_manager.load_manifests(str(single))] == ["n1"]
        assert [m["name"] for m in cluster_manager.load_manifests(str(listed))] == ["n1", "n2"]
        assert [m["name"] for m in cluster_manager.load_manifests(str(wrapped))] == ["n3"]

    def test_apply_puts_each_manifest(self, tmp_path):
        path = tmp_path / "objects.json"
        path.write_text(
            json.dumps(
                [
                    {"kind": "Node", "name": "n1", "labels": {"zone": "z1"}},
                    {"kind": "Pod", "namespace": "team", "name": "p", "spec": {"image": "app:1"}},
                ]
            )
        )
        client = MagicMock()
        client.__enter__.return_value = client
        client.put.return_value = httpx.Response(200, json={"resourceVersion": 7})

        with patch.object(cluster_manager.httpx, "Client", return_value=client):
            cluster_manager.apply_manifests("http://server", str(path))

        urls = [call.args[0] for call in client.put.call_args_list]
        assert urls == [
            "http://server/api/v1/namespaces/default/Node/n1",
            "http://server/api/v1/namespaces/team/Pod/p",
        ]
        assert client.put.call_args_list[1].kwargs["json"]["spec"] == {"image": "app:1"}


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert cluster_manager.main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_server_errors_fail_the_command(self):
        client = MagicMock()
        client.__enter__.return_value = client
        client.get.return_value = httpx.Response(404, json={"code": "NotFound", "message": "Pod/default/p not found"})
        with patch.object(cluster_manager.httpx, "Client", return_value=client):
            assert cluster_manager.main(["get", "Pod", "p"]) == 1

    def test_unreachable_server_fails_the_command(self):
        with patch.object(cluster_manager.httpx, "Client", side_effect=httpx.ConnectError("refused")):
            assert cluster_manager.main(["status", "Deployment", "web"]) == 1


    def test_serve_runs_the_module_app(self):
        with patch("uvicorn.run") as run:
            assert cluster_manager.main(["serve", "--port", "9000"]) == 0
        run.assert_called_once()
        args, kwargs = run.call_args
        assert args == ("kubeloop.app:app",)
        assert kwargs["port"] == 9000


class TestDemo:
    def test_demo_rolls_out_new_image(self, capsys):
        summary = cluster_manager.run_demo()
        assert summary["deployment"]["readyReplicas"] == 3
        assert {pod["image"] for pod in summary["pods"].values()} == {"web:2"}
        assert all(pod["node"] for pod in summary["pods"].values())
        assert "web:2" in capsys.readouterr().out
