# peercall/cli.py
import asyncio

COMMANDS = {
    "call <id>": "place a call (prompts for the id if omitted)",
    "hangup": "end the current call",
    "status": "show call state, media and last error",
    "exit": "hang up and quit",
}


class CLIHandler:
    def __init__(self, app):
        self.app = app

    def show_menu(self):
        print(f"\n--- peercall [{self.app.caller_id}] ---")
        print(f"Call status: {self.app.call.status.value}")
        for usage, help_text in COMMANDS.items():
            print(f"  {usage:<10} {help_text}")

    async def prompt(self, text):
        line = await asyncio.to_thread(input, text)
        return line.strip()

    async def handle(self, line):
        """Runs one command line. Returns False once the user asked to quit."""
        command, _, argument = line.partition(" ")
        command = command.lower()

        if command == "call":
            target_id = argument.strip() or await self.prompt("Enter Caller ID to call: ")
            await self.app.start_call(target_id)
        elif command == "hangup":
            await self.app.hang_up()
        elif command == "status":
            print(self.app.describe())
        elif command == "exit":
            await self.app.shutdown()
            return False
        elif command:
            print(f"Unknown command '{command}'.")
            self.show_menu()
        return True

    async def loop(self):
        self.show_menu()
        while True:
            try:
                if not await self.handle(await self.prompt("> ")):
                    break
            except (EOFError, KeyboardInterrupt):
                await self.app.shutdown()
                break
