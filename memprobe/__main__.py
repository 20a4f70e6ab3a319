from memprobe.agent import main

main()
