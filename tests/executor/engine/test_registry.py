"""Tests for engine.registry — pipeline document loading and step resolution."""

import json
import shutil
import tempfile
import textwrap
import unittest
from pathlib import Path

from stepline.executor.engine.conditions import Always, And, Defined, Equals, Succeeded
from stepline.executor.engine.errors import ConditionSyntaxError, PipelineConfigError
from stepline.executor.engine.registry import (
    DEFAULT_TIMEOUT_S,
    StepDefinition,
    assign_ids,
    load_pipeline,
    parse_pipeline,
)


class TestLoadPipeline(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp(prefix="reg_test_"))

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def _write(self, name: str, text: str) -> Path:
        path = self.tmp / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text))
        return path

    def test_load_yaml_pipeline(self):
        path = self._write("ci.yml", """
            name: nightly
            deadline: 7200
            variables:
              DEPLOY: true
              IMAGE: ubuntu-22.04
            secrets: [AWS_SECRET_ACCESS_KEY]
            steps:
              - bash: make -j8
                displayName: Build
                timeoutInMinutes: 30
              - script: make test
                displayName: Test
                continueOnError: true
              - bash: ./upload-logs.sh
                displayName: Upload logs
                condition: always()
            deploy:
              - bash: ./deploy.sh
                displayName: Deploy
                condition: and(succeeded(), eq(variables.DEPLOY, 'true'))
                retry: 3
        """)
        p = load_pipeline(path)
        self.assertEqual(p.name, "nightly")
        self.assertEqual(p.deadline, 7200)
        self.assertEqual(p.variables, {"DEPLOY": "true", "IMAGE": "ubuntu-22.04"})
        self.assertEqual(p.secrets, ["AWS_SECRET_ACCESS_KEY"])
        self.assertEqual([s.name for s in p.steps], ["Build", "Test", "Upload logs"])
        build, test, upload = p.steps
        self.assertEqual(build.timeout, 1800)
        self.assertEqual(build.shell, "bash")
        self.assertEqual(build.condition, Succeeded())
        self.assertEqual(test.shell, "default")
        self.assertTrue(test.continue_on_error)
        self.assertEqual(upload.condition, Always())
        deploy = p.deploy[0]
        self.assertEqual(deploy.phase, "deploy")
        self.assertEqual(deploy.condition, And((Succeeded(), Equals("DEPLOY", "true"))))
        self.assertEqual(deploy.retry.attempts, 3)
        self.assertEqual(p.timeout_for(test), DEFAULT_TIMEOUT_S)
        self.assertEqual(p.timeout_for(build), 1800)

    def test_load_json_pipeline(self):
        path = self.tmp / "ci.json"
        path.write_text(json.dumps({
            "steps": [{"command": "echo hi", "name": "Hello", "env": {"N": 3, "FLAG": False}}],
            "default_timeout": 60,
        }))
        p = load_pipeline(path)
        self.assertEqual(p.name, "ci")
        self.assertEqual(p.default_timeout, 60)
        self.assertEqual(p.steps[0].env, {"N": "3", "FLAG": "false"})
        self.assertEqual(p.steps[0].id, "hello")

    def test_template_include_is_relative_to_including_file(self):
        self._write("templates/setup.yml", """
            steps:
              - bash: ./install-deps.sh
                displayName: Install deps
              - template: more.yml
        """)
        self._write("templates/more.yml", """
            - bash: ./configure
              displayName: Configure
        """)
        path = self._write("ci.yml", """
            steps:
              - template: templates/setup.yml
              - bash: make
                displayName: Build
        """)
        p = load_pipeline(path)
        self.assertEqual([s.name for s in p.steps], ["Install deps", "Configure", "Build"])

    def test_recursive_template_is_rejected(self):
        self._write("a.yml", "steps:\n  - template: b.yml\n")
        self._write("b.yml", "steps:\n  - template: a.yml\n")
        with self.assertRaises(PipelineConfigError) as ctx:
            load_pipeline(self.tmp / "a.yml")
        self.assertIn("recursive", str(ctx.exception))

    def test_missing_file(self):
        with self.assertRaises(PipelineConfigError):
            load_pipeline(self.tmp / "nope.yml")

    def test_unparseable_yaml(self):
        path = self._write("bad.yml", "steps: [unclosed\n")
        with self.assertRaises(PipelineConfigError):
            load_pipeline(path)

    def test_bad_condition_names_location(self):
        path = self._write("ci.yml", """
            steps:
              - bash: echo
                condition: eq(variables.X
        """)
        with self.assertRaises(ConditionSyntaxError) as ctx:
            load_pipeline(path)
        self.assertIn("steps[0]", ctx.exception.location)


class TestParsePipeline(unittest.TestCase):
    def test_no_steps(self):
        with self.assertRaises(PipelineConfigError):
            parse_pipeline({"name": "empty", "steps": []})

    def test_not_a_mapping(self):
        with self.assertRaises(PipelineConfigError):
            parse_pipeline(["bash: echo"])

    def test_step_needs_exactly_one_kind(self):
        for raw in [{"name": "x"}, {"bash": "a", "script": "b"}]:
            with self.subTest(raw=raw):
                with self.assertRaises(PipelineConfigError):
                    parse_pipeline({"steps": [raw]})

    def test_unknown_step_key(self):
        with self.assertRaises(PipelineConfigError) as ctx:
            parse_pipeline({"steps": [{"bash": "echo", "colour": "red"}]})
        self.assertIn("colour", str(ctx.exception))

    def test_unknown_shell(self):
        with self.assertRaises(PipelineConfigError):
            parse_pipeline({"steps": [{"bash": "echo", "shell": "fish"}]})

    def test_invalid_timeout(self):
        for value in [0, -5, "soon", True]:
            with self.subTest(value=value):
                with self.assertRaises(PipelineConfigError):
                    parse_pipeline({"steps": [{"bash": "echo", "timeout": value}]})

    def test_derived_name_from_first_line(self):
        p = parse_pipeline({"steps": [{"bash": "cmake -B build\ncmake --build build"}]})
        self.assertEqual(p.steps[0].name, "cmake -B build")

    def test_retry_forms(self):
        p = parse_pipeline({
            "retry": {"attempts": 4, "backoff": "fixed", "delay": 2},
            "steps": [
                {"bash": "a", "retry": True},
                {"bash": "b", "retry": {"attempts": 2, "delay": 5, "backoff": "exponential"}},
                {"bash": "c"},
            ],
        })
        a, b, c = p.steps
        self.assertEqual(a.retry.attempts, 4)
        self.assertEqual(a.retry.backoff.kind, "fixed")
        self.assertEqual(a.retry.backoff.delay, 2)
        self.assertEqual(b.retry.attempts, 2)
        self.assertEqual(b.retry.backoff.delay, 5)
        self.assertIsNone(c.retry)

    def test_invalid_retry(self):
        for raw in [0, {"attempts": 0}, "often", {"backoff": "linear"}]:
            with self.subTest(raw=raw):
                with self.assertRaises(PipelineConfigError):
                    parse_pipeline({"steps": [{"bash": "a", "retry": raw}]})

    def test_publish_step(self):
        p = parse_pipeline({"deploy": [
            {"publish": {"path": "out/app.tgz", "remote": "s3://b/$(Build.SourceVersion)/app.tgz",
                         "visibility": "public-read"}},
        ]})
        step = p.deploy[0]
        self.assertEqual(step.publish.path, "out/app.tgz")
        self.assertEqual(step.publish.visibility, "public-read")
        self.assertEqual(step.name, "Publish out/app.tgz")

    def test_publish_step_validation(self):
        for raw in [{"path": "x"}, {"path": "x", "remote": "y", "visibility": "everyone"}]:
            with self.subTest(raw=raw):
                with self.assertRaises(PipelineConfigError):
                    parse_pipeline({"steps": [{"publish": raw}]})

    def test_background(self):
        p = parse_pipeline({
            "steps": [{"bash": "make"}],
            "background": {
                "command": "stepline sample-cpu",
                "sink": "cpu.csv",
                "upload": {"remote": "s3://b/cpu.csv", "visibility": "public-read",
                           "condition": "contains(variables, 'AWS_SECRET_ACCESS_KEY')"},
            },
        })
        bg = p.background
        self.assertEqual(bg.sink, "cpu.csv")
        self.assertEqual(bg.upload.remote, "s3://b/cpu.csv")
        self.assertEqual(bg.upload_condition, Defined("AWS_SECRET_ACCESS_KEY"))

    def test_background_defaults_to_always_upload(self):
        p = parse_pipeline({"steps": [{"bash": "make"}],
                            "background": {"command": "x", "sink": "y", "upload": {"remote": "r"}}})
        self.assertEqual(p.background.upload_condition, Always())

    def test_background_validation(self):
        with self.assertRaises(PipelineConfigError):
            parse_pipeline({"steps": [{"bash": "make"}], "background": {"command": "x"}})

    def test_variables_must_be_mapping(self):
        with self.assertRaises(PipelineConfigError):
            parse_pipeline({"steps": [{"bash": "make"}], "variables": ["A=1"]})


class TestAssignIds(unittest.TestCase):
    def test_unique_slugs(self):
        steps = [StepDefinition(name="Build"), StepDefinition(name="build"), StepDefinition(name="!!!")]
        assign_ids(steps)
        self.assertEqual([s.id for s in steps], ["build", "build-2", "step"])


class TestExamplePipeline(unittest.TestCase):
    def test_bundled_example_loads(self):
        path = Path(__file__).resolve().parents[3] / "pipelines" / "ci.yml"
        p = load_pipeline(path)
        names = [s.name for s in p.steps]
        self.assertIn("Prepare tool directory (Unix)", names)
        self.assertIn("Run build", names)
        self.assertEqual(p.deploy[0].publish.visibility, "public-read")
        self.assertEqual(p.deploy[0].retry.attempts, 5)
        self.assertEqual(p.background.upload_condition, Defined("AWS_SECRET_ACCESS_KEY"))
