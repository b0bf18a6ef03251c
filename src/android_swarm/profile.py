from __future__ import annotations

from dataclasses import dataclass


ANDROID_CODING_GUIDELINES = """\
# Kotlin/Android Coding Profile

## Build configuration
- Gradle and Kotlin versions exactly as given in the task; JVM target 17
- compileSdk equals targetSdk; minSdk and targetSdk as given in the task
- Plugins block first using the id() DSL; explicit dependency versions, never "+"

## Dependencies
- AndroidX Core KTX, AppCompat, Material Components, Lifecycle (ViewModel)
- Kotlin Coroutines for asynchronous work
- Jetpack Compose only when ui_system is Compose; Navigation for multi-screen apps

## Kotlin files
- Package declaration matches the directory structure
- Sorted imports, no wildcards; one public class per file except sealed hierarchies
- PascalCase types, camelCase members, 4-space indentation
- Prefer non-null types; explicit visibility modifiers

## XML files (Views)
- Declare android, app and tools namespaces on the root element
- dp for layout sizes, sp for text; reference @string/ and @color/ resources

## Compose
- @Composable functions in PascalCase with a @Preview for every screen
- State through remember/mutableStateOf/collectAsState

## AndroidManifest.xml
- Application element with name, icon and theme
- Launcher activity with MAIN/LAUNCHER intent filter; only required permissions

## Forbidden
- android.support.*, AsyncTask, Handler.postDelayed, ProgressDialog, GlobalScope
- runBlocking outside main/tests, hardcoded secrets or plain-HTTP endpoints
- Long-lived references to Activity or Fragment
"""

ANDROID_REVIEW_CRITERIA: tuple[str, ...] = (
    "Syntax errors",
    "Violates coding profile",
    "Missing required functionality",
    "Incorrect architecture pattern",
    "Android API misuse",
)


@dataclass(frozen=True)
class ProjectProfile:
    """Domain schema the planner, coder and critic are held to.

    The orchestration core never inspects generated content itself; it only
    asks the profile which file types exist and which files every plan must
    contain.
    """

    name: str
    file_types: frozenset[str]
    manifest_filename: str
    build_config_file_type: str
    coding_guidelines: str
    review_criteria: tuple[str, ...]

    def is_manifest(self, file_path: str) -> bool:
        return file_path.replace("\\", "/").rsplit("/", 1)[-1] == self.manifest_filename

    def is_build_config(self, file_type: str) -> bool:
        return file_type == self.build_config_file_type


ANDROID_PROFILE = ProjectProfile(
    name="android-kotlin",
    file_types=frozenset({"kotlin", "xml", "gradle", "manifest"}),
    manifest_filename="AndroidManifest.xml",
    build_config_file_type="gradle",
    coding_guidelines=ANDROID_CODING_GUIDELINES,
    review_criteria=ANDROID_REVIEW_CRITERIA,
)
